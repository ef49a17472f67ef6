"""Tests for agent roles and role selection."""

import pytest

from team_orchestrator.core.roles import ROLE_PROFILES, Role, determine_agent_roles, parse_role, profile


class TestDetermineRoles:
    def test_base_roles_only(self):
        roles = determine_agent_roles("Build a full-stack dashboard with authentication and a database")
        assert roles == [Role.FRONTEND, Role.BACKEND]

    def test_testing_keyword(self):
        assert Role.TESTING in determine_agent_roles("Add login with unit tests")

    def test_styling_keywords(self):
        assert Role.STYLING in determine_agent_roles("Style the settings page")
        assert Role.STYLING in determine_agent_roles("New UI for search")
        assert Role.STYLING in determine_agent_roles("Design a signup flow")

    def test_ui_inside_word_does_not_add_styling(self):
        assert Role.STYLING not in determine_agent_roles("Build a queue for requests")

    def test_docs_keywords(self):
        assert Role.DOCS in determine_agent_roles("Write docs for the API")
        assert Role.DOCS in determine_agent_roles("Update the README")

    def test_all_optional_roles_in_order(self):
        roles = determine_agent_roles("Test the UI and document it")
        assert roles == [Role.FRONTEND, Role.BACKEND, Role.TESTING, Role.STYLING, Role.DOCS]

    def test_capped(self):
        roles = determine_agent_roles("Test the UI and document it", max_agents=3)
        assert roles == [Role.FRONTEND, Role.BACKEND, Role.TESTING]


class TestRoleTable:
    def test_every_role_has_a_profile(self):
        assert set(ROLE_PROFILES) == set(Role)
        for role in Role:
            assert profile(role).focus

    def test_profile_accepts_strings(self):
        assert profile("backend").title == "Backend Developer"

    def test_parse_role(self):
        assert parse_role(" Frontend ") is Role.FRONTEND

    def test_parse_role_typo(self):
        with pytest.raises(ValueError, match="Valid roles"):
            parse_role("frontnd")

    def test_str_is_value(self):
        assert str(Role.DEVOPS) == "devops"
