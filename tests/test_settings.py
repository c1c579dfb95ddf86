"""Tests for runtime settings lookup."""

import pytest

from autoreach.settings import get_settings, save_setting, normalize_required_grade, normalize_suggested_grade


class TestGetSettings:

    def test_defaults(self, session_factory):
        with session_factory() as db:
            settings = get_settings(db)
        assert settings.required_grade == "A"
        assert settings.followup_days == 3
        assert settings.admin_email == ""
        assert settings.automation_enabled is True

    def test_config_table_overrides(self, session_factory, set_setting):
        set_setting("automation_required_grade", "b")
        set_setting("automation_followup_days", "7")
        set_setting("admin_email", "  owner@autoreach.example ")
        set_setting("automation_enabled", "false")

        with session_factory() as db:
            settings = get_settings(db)
        assert settings.required_grade == "B"
        assert settings.followup_days == 7
        assert settings.admin_email == "owner@autoreach.example"
        assert settings.automation_enabled is False

    @pytest.mark.parametrize("value", ["0", "-2", "soon"])
    def test_bad_followup_days_fall_back(self, session_factory, set_setting, value):
        set_setting("automation_followup_days", value)
        with session_factory() as db:
            assert get_settings(db).followup_days == 3

    def test_save_setting_updates_in_place(self, session_factory):
        with session_factory() as db:
            save_setting(db, "admin_email", "a@autoreach.example")
            row = save_setting(db, "admin_email", "b@autoreach.example")
            assert row.value == "b@autoreach.example"
            assert get_settings(db).admin_email == "b@autoreach.example"

    def test_unknown_key(self, session_factory):
        with session_factory() as db:
            with pytest.raises(KeyError):
                save_setting(db, "openai_api_key", "sk-test")


class TestGradeNormalization:

    @pytest.mark.parametrize("value,expected", [("", "A"), (None, "A"), ("s", "A"), ("b", "B"), (" C ", "C")])
    def test_required_grade(self, value, expected):
        assert normalize_required_grade(value) == expected

    @pytest.mark.parametrize("value,expected", [("A", "A"), ("S", "A"), ("b", "B"), ("", "C"), ("Z", "C"), (None, "C")])
    def test_suggested_grade(self, value, expected):
        assert normalize_suggested_grade(value) == expected
