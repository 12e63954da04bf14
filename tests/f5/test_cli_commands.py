"""Tests for the study CLI (F5)."""

import json

import pytest
from typer.testing import CliRunner

from studyrecord.cli.commands import app

runner = CliRunner()

CONFIG_YAML = """\
defaults:
  grading_scheme: german
  institution: TUM

institutions:
  TUM:
    max_attempts: 3
    strategy: first_passing
"""


@pytest.fixture
def cli_env(tmp_path) -> dict[str, str]:
    """Environment pointing the CLI at a temp database and config."""
    config_path = tmp_path / "studyrecord.yaml"
    config_path.write_text(CONFIG_YAML)
    return {
        "STUDYRECORD_DB": str(tmp_path / "db" / "studyrecord.db"),
        "STUDYRECORD_CONFIG": str(config_path),
    }


@pytest.fixture
def invoke(cli_env):
    def _invoke(*args: str, input: str | None = None):
        return runner.invoke(app, list(args), env=cli_env, input=input)

    return _invoke


@pytest.fixture
def with_course(invoke):
    result = invoke("add-course", "ana1", "Analysis 1", "--ects", "8")
    assert result.exit_code == 0, result.output
    return "ana1"


class TestSchemeCommands:
    def test_init(self, invoke):
        result = invoke("init")

        assert result.exit_code == 0
        assert "Database ready" in result.output

    def test_schemes_json(self, invoke):
        result = invoke("schemes", "--json")

        assert result.exit_code == 0
        names = [s["name"] for s in json.loads(result.output)]
        assert "german" in names
        assert "us" in names

    def test_schemes_table(self, invoke):
        result = invoke("schemes")

        assert result.exit_code == 0
        assert "german" in result.output

    def test_convert(self, invoke):
        result = invoke("convert", "1.0", "german", "us")

        assert result.exit_code == 0
        assert "= 4" in result.output

    def test_convert_unmapped(self, invoke):
        result = invoke("convert", "1.6", "german", "us")

        assert result.exit_code == 1
        assert "No conversion" in result.output

    def test_add_scheme_and_conversion(self, invoke):
        result = invoke(
            "add-scheme", "swiss", "--scale", "6,5,4,3,2,1", "--higher-is-better", "--pass", "4"
        )
        assert result.exit_code == 0

        result = invoke("add-conversion", "swiss", "german", "6", "1")
        assert result.exit_code == 0

        result = invoke("convert", "6", "swiss", "german")
        assert result.exit_code == 0
        assert "= 1" in result.output

    def test_add_invalid_scheme(self, invoke):
        result = invoke(
            "add-scheme", "swiss", "--scale", "6,5,4,3,2,1", "--lower-is-better", "--pass", "4"
        )

        assert result.exit_code == 1
        assert "✗" in result.output


class TestCourseCommands:
    def test_add_course_uses_config_defaults(self, invoke, with_course):
        result = invoke("courses", "--json")

        assert result.exit_code == 0
        courses = json.loads(result.output)
        assert len(courses) == 1
        assert courses[0]["short_name"] == "ana1"
        assert courses[0]["institution"] == "TUM"
        assert courses[0]["grading_scheme"] == "german"
        assert courses[0]["state"] == "enrolled"

    def test_duplicate_course(self, invoke, with_course):
        result = invoke("add-course", "ana1", "Analysis 1", "--ects", "8")

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_unknown_course(self, invoke, with_course):
        result = invoke("attempts", "stats")

        assert result.exit_code == 1
        assert "No course found" in result.output
        assert "ana1" in result.output

    def test_ambiguous_prefix(self, invoke, with_course):
        invoke("add-course", "ana2", "Analysis 2", "--ects", "8")

        result = invoke("attempts", "ana")

        assert result.exit_code == 1
        assert "ambiguous" in result.output

    def test_prefix_resolution(self, invoke, with_course):
        result = invoke("attempt", "an", "2.0")

        assert result.exit_code == 0
        assert "Attempt 1 recorded" in result.output

    def test_set_state_and_hidden_from_list(self, invoke, with_course):
        result = invoke("set-state", "ana1", "dropped")
        assert result.exit_code == 0

        assert json.loads(invoke("courses", "--json").output) == []
        assert len(json.loads(invoke("courses", "--all", "--json").output)) == 1

    def test_complete_requires_grade(self, invoke, with_course):
        result = invoke("complete", "ana1")

        assert result.exit_code == 1
        assert "Policy:" in result.output
        assert "Suggestion:" in result.output

    def test_complete_after_pass(self, invoke, with_course):
        invoke("attempt", "ana1", "2.0")

        result = invoke("complete", "ana1")

        assert result.exit_code == 0
        assert "Completed" in result.output

    def test_delete_course_confirm(self, invoke, with_course):
        result = invoke("delete-course", "ana1", input="n\n")
        assert "Cancelled" in result.output
        assert len(json.loads(invoke("courses", "--json").output)) == 1

        result = invoke("delete-course", "ana1", "--yes")
        assert result.exit_code == 0
        assert json.loads(invoke("courses", "--json").output) == []

    def test_course_policy(self, invoke, with_course):
        result = invoke("course-policy", "ana1", "--max-attempts", "unlimited", "--strategy", "best")

        assert result.exit_code == 0
        assert "max_attempts=unlimited" in result.output

        history = json.loads(invoke("attempts", "ana1", "--json").output)
        assert history["policy"]["max_attempts"] is None
        assert history["policy"]["strategy"] == "best"

    def test_course_policy_clear(self, invoke, with_course):
        invoke("course-policy", "ana1", "--max-attempts", "5")

        result = invoke("course-policy", "ana1", "--clear")

        assert result.exit_code == 0
        assert "max_attempts=3" in result.output


class TestGradingCommands:
    def test_worked_bonus_example(self, invoke, with_course):
        assert invoke("components", "ana1", "--set", "midterm=40,final=60").exit_code == 0
        assert invoke("score", "ana1", "midterm", "-g", "2.0").exit_code == 0
        assert invoke("score", "ana1", "final", "-g", "1.5").exit_code == 0
        result = invoke(
            "bonus", "ana1", "--max-points", "20", "--max-percent", "20", "--cap", "1.0"
        )
        assert result.exit_code == 0, result.output
        assert invoke("score", "ana1", "bonus", "-p", "15").exit_code == 0

        result = invoke("grade", "ana1", "--json")

        assert result.exit_code == 0
        final = json.loads(result.output)
        assert final["value"] == pytest.approx(1.445)
        assert final["base_value"] == pytest.approx(1.7)
        assert final["bonus_applied"] is True

    def test_components_json_pending(self, invoke, with_course):
        invoke("components", "ana1", "--set", "midterm=40,final=60")
        invoke("score", "ana1", "midterm", "-p", "45/60")

        result = invoke("components", "ana1", "--json")

        payload = json.loads(result.output)
        assert [c["name"] for c in payload["components"]] == ["midterm", "final"]
        assert payload["components"][0]["grade"] == pytest.approx(2.0)
        assert payload["final_grade"]["pending"] is True

    def test_weights_must_sum_to_100(self, invoke, with_course):
        result = invoke("components", "ana1", "--set", "midterm=40,final=50")

        assert result.exit_code == 1
        assert "sum to 100" in result.output

    def test_add_component_rebalance(self, invoke, with_course):
        invoke("components", "ana1", "--set", "midterm=40,final=60")

        assert invoke("add-component", "ana1", "project", "20").exit_code == 1

        result = invoke("add-component", "ana1", "project", "20", "--rebalance")
        assert result.exit_code == 0

        payload = json.loads(invoke("components", "ana1", "--json").output)
        weights = {c["name"]: c["weight"] for c in payload["components"]}
        assert weights == pytest.approx({"midterm": 32, "final": 48, "project": 20})

    def test_remove_component_without_rebalance(self, invoke, with_course):
        invoke("components", "ana1", "--set", "midterm=40,final=60")

        result = invoke("remove-component", "ana1", "midterm", "--no-rebalance")

        assert result.exit_code == 1
        assert "rebalance" in result.output
        payload = json.loads(invoke("components", "ana1", "--json").output)
        assert [c["name"] for c in payload["components"]] == ["midterm", "final"]

    def test_bonus_malformed_step(self, invoke, with_course):
        result = invoke(
            "bonus", "ana1", "--max-points", "20", "--max-percent", "20",
            "--function", "threshold", "--step", "ten:5", "--cap", "1.0",
        )

        assert result.exit_code == 1
        assert "POINTS:PERCENT" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)

    def test_finalize_and_recompute(self, invoke, with_course):
        invoke("components", "ana1", "--set", "exam=100")

        assert invoke("finalize", "ana1").exit_code == 1

        invoke("score", "ana1", "exam", "-g", "2.0")
        result = invoke("finalize", "ana1", "--date", "2026-02-14")
        assert result.exit_code == 0
        assert "Finalized" in result.output

        invoke("score", "ana1", "exam", "-g", "1.7")
        result = invoke("recompute", "ana1")
        assert result.exit_code == 0

        history = json.loads(invoke("attempts", "ana1", "--json").output)
        assert history["attempts"][0]["grade"] == pytest.approx(1.7)
        assert history["attempts"][0]["exam_date"] == "2026-02-14"


class TestAttemptCommands:
    def test_attempt_flow(self, invoke, with_course):
        result = invoke("attempt", "ana1", "5.0", "--json")
        assert result.exit_code == 0
        first = json.loads(result.output)
        assert first["attempt"]["attempt_number"] == 1
        assert first["attempt"]["is_active"] is True
        assert first["attempt"]["passed"] is False

        second = json.loads(invoke("attempt", "ana1", "2.3", "--json").output)
        assert second["attempt"]["is_active"] is True
        assert "Only one attempt left under the current policy" in second["warnings"]

    def test_retake_after_pass_blocked(self, invoke, with_course):
        invoke("attempt", "ana1", "2.3")

        result = invoke("attempt", "ana1", "1.7")

        assert result.exit_code == 1
        assert "already passed" in result.output
        assert "Suggestion:" in result.output

    def test_force_with_note(self, invoke, with_course):
        invoke("attempt", "ana1", "2.3")

        assert invoke("attempt", "ana1", "1.7", "--force").exit_code == 1

        result = invoke("attempt", "ana1", "1.7", "--force", "--note", "improvement exam", "--json")
        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert payload["attempt"]["forced"] is True
        assert payload["attempt"]["is_active"] is False
        assert payload["warnings"]

    def test_attempt_in_other_scheme(self, invoke, with_course):
        result = invoke("attempt", "ana1", "4.0", "--scheme", "us", "--json")

        attempt = json.loads(result.output)["attempt"]
        assert attempt["grade"] == 1.0
        assert attempt["original_grade"] == 4.0
        assert attempt["original_scheme"] == "us"

    def test_activate_and_reset(self, invoke, with_course):
        invoke("course-policy", "ana1", "--allow-retake")
        invoke("attempt", "ana1", "2.3")
        invoke("attempt", "ana1", "1.7")

        assert invoke("activate", "ana1", "2").exit_code == 1

        result = invoke("activate", "ana1", "2", "--reason", "better grade counts")
        assert result.exit_code == 0
        history = json.loads(invoke("attempts", "ana1", "--json").output)
        assert history["active_index"] == 1
        assert history["mode"] == "manual"
        assert history["reason"] == "better grade counts"

        assert invoke("reset-active", "ana1").exit_code == 0
        history = json.loads(invoke("attempts", "ana1", "--json").output)
        assert history["active_index"] == 0
        assert history["mode"] == "policy"

    def test_activate_unknown_attempt(self, invoke, with_course):
        invoke("attempt", "ana1", "2.3")

        result = invoke("activate", "ana1", "7", "-r", "typo")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_attempts_empty(self, invoke, with_course):
        result = invoke("attempts", "ana1")

        assert result.exit_code == 0
        assert "No attempts" in result.output


class TestDegreeCommands:
    @pytest.fixture
    def with_degree(self, invoke, with_course):
        result = invoke(
            "add-degree", "Informatics", "--type", "bsc", "--ects", "180",
            "--area", "Core:60", "--non-gpa-area", "Soft Skills:10",
        )
        assert result.exit_code == 0, result.output
        return 1

    def test_degrees_json(self, invoke, with_degree):
        degrees = json.loads(invoke("degrees", "--json").output)

        assert degrees[0]["name"] == "Informatics"
        assert degrees[0]["degree_type"] == "bachelor"
        assert degrees[0]["institution"] == "TUM"
        assert [a["name"] for a in degrees[0]["areas"]] == ["Core", "Soft Skills"]
        assert degrees[0]["areas"][1]["counts_towards_gpa"] is False

    def test_progress_and_missing(self, invoke, with_degree):
        invoke("attempt", "ana1", "1.7")
        assert invoke("map", "ana1", "1", "core").exit_code == 0

        report = json.loads(invoke("progress", "1", "--json").output)
        assert report["total_earned"] == 8
        assert report["total_required"] == 180
        assert report["gpa"] == pytest.approx(1.7)
        assert report["areas"][1]["gpa"] is None

        shortfall = json.loads(invoke("missing", "1", "--json").output)
        assert shortfall["total_missing"] == 62

    def test_progress_table(self, invoke, with_degree):
        result = invoke("progress", "1")

        assert result.exit_code == 0
        assert "Informatics" in result.output

    def test_unknown_area(self, invoke, with_degree):
        result = invoke("map", "ana1", "1", "Thesis")

        assert result.exit_code == 1
        assert "no area" in result.output

    def test_eligible_and_unmapped(self, invoke, with_degree):
        assert invoke("eligible", "ana1", "1", "Core", "--recommended").exit_code == 0

        items = json.loads(invoke("unmapped", "--degree", "1", "--json").output)
        assert items[0]["short_name"] == "ana1"
        assert items[0]["recommended_area_ids"] == items[0]["area_ids"]

        invoke("map", "ana1", "1", "Core")
        result = invoke("unmapped")
        assert "All eligible courses are mapped" in result.output

    def test_unmap(self, invoke, with_degree):
        invoke("map", "ana1", "1", "Core")

        assert invoke("unmap", "ana1", "1", "Core").exit_code == 0
        assert invoke("unmap", "ana1", "1", "Core").exit_code == 1

    def test_add_area(self, invoke, with_degree):
        result = invoke("add-area", "1", "Thesis", "12", "--no-gpa")

        assert result.exit_code == 0
        degrees = json.loads(invoke("degrees", "--json").output)
        assert degrees[0]["areas"][-1]["name"] == "Thesis"
        assert degrees[0]["areas"][-1]["counts_towards_gpa"] is False

    def test_update_area(self, invoke, with_degree):
        result = invoke("update-area", "2", "--name", "Key Skills", "--ects", "12", "--gpa")

        assert result.exit_code == 0, result.output
        areas = json.loads(invoke("degrees", "--json").output)[0]["areas"]
        assert areas[1]["name"] == "Key Skills"
        assert areas[1]["required_ects"] == 12
        assert areas[1]["counts_towards_gpa"] is True
        assert areas[0]["required_ects"] == 60

    def test_update_unknown_area(self, invoke, with_degree):
        result = invoke("update-area", "9", "--ects", "5")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_delete_area(self, invoke, with_degree):
        invoke("map", "ana1", "1", "Soft Skills")

        assert invoke("delete-area", "2", input="n\n").exit_code == 0
        result = invoke("delete-area", "2", "--yes")

        assert result.exit_code == 0
        areas = json.loads(invoke("degrees", "--json").output)[0]["areas"]
        assert [a["name"] for a in areas] == ["Core"]
        assert invoke("delete-area", "2", "--yes").exit_code == 1

    def test_overall_gpa(self, invoke, with_degree):
        invoke("attempt", "ana1", "2.3")
        invoke("map", "ana1", "1", "Core")

        report = json.loads(invoke("gpa", "--json").output)
        assert report["gpa"] == pytest.approx(2.3)
        assert report["scheme"] == "german"
        assert report["total_ects"] == 8

        converted = json.loads(invoke("gpa", "--scheme", "us", "--json").output)
        assert converted["gpa"] == pytest.approx(2.7)

    def test_overall_gpa_empty(self, invoke, with_degree):
        result = invoke("gpa")

        assert result.exit_code == 0
        assert "No passed courses" in result.output

    def test_progress_unknown_degree(self, invoke, with_course):
        result = invoke("progress", "9")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_delete_degree(self, invoke, with_degree):
        result = invoke("delete-degree", "1", "--yes")

        assert result.exit_code == 0
        assert json.loads(invoke("degrees", "--json").output) == []
