from __future__ import annotations

import pytest

from scope_resolution import ActiveSelection, resolve, stored_defaults_from_env


class TestResolve:
    def test_first_non_empty_layer_wins(self):
        layers = [("form", {"page_id": "  "}), ("switched", {"page_id": "pg-2"}), ("stored", {"page_id": "pg-1"})]
        r = resolve("page_id", layers)
        assert (r.value, r.source) == ("pg-2", "switched")

    def test_nothing_configured(self):
        r = resolve("pixel_id", [("form", {}), ("stored", {})])
        assert r.value is None
        assert r.source is None


class TestActiveSelection:
    def test_form_over_switched_over_stored(self):
        selection = ActiveSelection({"page_id": "pg-stored", "pixel_id": "px-stored"})
        selection.switch(page_id="pg-switched")

        resolved = selection.resolve_all({"pixel_id": "px-form"})
        assert (resolved["page_id"].value, resolved["page_id"].source) == ("pg-switched", "switched")
        assert (resolved["pixel_id"].value, resolved["pixel_id"].source) == ("px-form", "form")
        assert resolved["credential_id"].value is None

    def test_empty_switch_clears(self):
        selection = ActiveSelection({"page_id": "pg-stored"})
        selection.switch(page_id="pg-switched")
        assert selection.switch(page_id="") == {}
        assert selection.resolve("page_id").source == "stored"

    def test_unknown_field(self):
        with pytest.raises(ValueError):
            ActiveSelection().switch(ad_account_id="act_1")

    def test_stored_defaults_from_env(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_PAGE_ID", " pg-9 ")
        monkeypatch.setenv("DEFAULT_PIXEL_ID", "")
        monkeypatch.delenv("DEFAULT_CREDENTIAL_ID", raising=False)
        assert stored_defaults_from_env() == {"page_id": "pg-9"}
