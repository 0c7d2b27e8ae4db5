"""Tests for the concurrent test suite runner and test case loading."""

import json
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from toolcall_eval.clients import ModelReply
from toolcall_eval.errors import ConfigurationError
from toolcall_eval.main import load_test_cases, main, sanitize_model_name
from toolcall_eval.models import (
    ExpectedToolCall,
    ExpectedToolPath,
    InitialCartItem,
    InitialCartState,
    TestCase,
    TestConfig,
)
from toolcall_eval.runner import TEST_SUITE_NAME, TestRunner, build_report, save_results

from conftest import RoutingClient, ScriptedClient, tool_call


def add_case(name: str, product: str) -> TestCase:
    return TestCase(
        name=name,
        prompt=f"Add {product}",
        expected_tools_variants=[ExpectedToolPath("direct", [ExpectedToolCall("add_to_cart", {"product_name": product})])],
    )


@pytest.fixture
def suite():
    cases = [
        add_case("add_tea", "Green Tea"),
        add_case("add_mat", "Yoga Mat"),
        TestCase(name="hello", prompt="Hello", expected_tools_variants=[]),
        add_case("add_broken", "Cookbook"),
    ]
    routes = {
        "Add Green Tea": [tool_call("add_to_cart", "c1", product_name="Green Tea")],
        "Add Yoga Mat": [tool_call("add_to_cart", "c1", product_name="Shampoo")],
        "Hello": [],
        "Add Cookbook": ConnectionError("connection refused"),
    }
    return cases, routes


class TestSuiteAggregation:
    """Tests for fan-out and report aggregation."""

    def test_counts_across_models(self, suite) -> None:
        """Every test case runs once per model and counts aggregate correctly."""
        cases, routes = suite
        runner = TestRunner(lambda name: RoutingClient(routes, model=name))
        report = runner.run_agent_test_suite(cases, ["model-a", "model-b"])

        assert report.test_suite == TEST_SUITE_NAME
        assert report.total_tests == 8
        assert report.passed_tests == 4  # add_tea and hello, for both models
        assert report.failed_tests == 4
        assert sorted(r.model_name for r in report.results) == ["model-a"] * 4 + ["model-b"] * 4

    def test_error_is_isolated(self, suite) -> None:
        """A transport error fails only its own unit and carries the message."""
        cases, routes = suite
        report = TestRunner(lambda name: RoutingClient(routes)).run_agent_test_suite(cases, ["m"])

        by_name = {r.test_case.name: r for r in report.results}
        broken = by_name["add_broken"]
        assert broken.success is False
        assert broken.response is None
        assert "connection refused" in broken.error_message
        assert by_name["add_tea"].success is True
        assert by_name["add_tea"].matched_path == "direct"
        assert by_name["hello"].matched_path == "no_tools_expected"
        assert by_name["add_mat"].success is False
        assert by_name["add_mat"].matched_path == ""

    def test_llm_metrics_only_from_completed_responses(self, suite) -> None:
        """LLM request totals skip errored units."""
        cases, routes = suite
        report = TestRunner(lambda name: RoutingClient(routes)).run_agent_test_suite(cases, ["m"])

        # two-step loops for the add cases that reached the model, one for hello
        assert report.total_llm_requests == 2 + 2 + 1
        assert report.avg_time_per_req == pytest.approx(report.total_llm_time / 5)
        assert report.average_time == pytest.approx(
            sum(r.response_time for r in report.results) / len(report.results))

    def test_configs_multiply_units(self, suite) -> None:
        """Each config adds a full pass over cases and models."""
        cases, routes = suite
        configs = [TestConfig(system_prompt="a"), TestConfig(system_prompt="b")]
        report = TestRunner(lambda name: RoutingClient(routes)).run_agent_test_suite(cases, ["m"], configs)
        assert report.total_tests == 8
        assert {r.config.system_prompt for r in report.results} == {"a", "b"}

    def test_units_run_concurrently(self) -> None:
        """All units are in flight at once when no worker cap is set."""
        count = 4
        barrier = threading.Barrier(count, timeout=5)

        class BarrierClient(ScriptedClient):
            def create_completion(self, messages, tools, temperature=0.0, max_tokens=0):
                barrier.wait()
                return ModelReply(content="hi")

        cases = [TestCase(name=f"t{i}", prompt="Hello", expected_tools_variants=[]) for i in range(count)]
        report = TestRunner(lambda name: BarrierClient([])).run_agent_test_suite(cases, ["m"])
        assert report.passed_tests == count

    def test_worker_cap(self) -> None:
        """max_workers bounds the number of simultaneous model calls."""
        lock = threading.Lock()
        active = {"now": 0, "peak": 0}

        class CountingClient(ScriptedClient):
            def create_completion(self, messages, tools, temperature=0.0, max_tokens=0):
                with lock:
                    active["now"] += 1
                    active["peak"] = max(active["peak"], active["now"])
                threading.Event().wait(0.01)
                with lock:
                    active["now"] -= 1
                return ModelReply(content="hi")

        cases = [TestCase(name=f"t{i}", prompt="Hello", expected_tools_variants=[]) for i in range(6)]
        runner = TestRunner(lambda name: CountingClient([]), max_workers=2)
        report = runner.run_agent_test_suite(cases, ["m"])
        assert report.total_tests == 6
        assert active["peak"] <= 2

    def test_cancelled_suite_fails_every_unit(self, suite) -> None:
        """A pre-set cancellation event turns every unit into a failed result."""
        cases, routes = suite
        cancel = threading.Event()
        cancel.set()
        report = TestRunner(lambda name: RoutingClient(routes)).run_agent_test_suite(
            cases, ["m"], cancel_event=cancel)
        assert report.total_tests == 4
        assert report.passed_tests == 0
        assert all("cancelled" in r.error_message for r in report.results)

    def test_empty_suite(self) -> None:
        """No test cases yields an empty report with zero averages."""
        report = TestRunner(lambda name: ScriptedClient([])).run_agent_test_suite([], ["m"])
        assert report.total_tests == 0
        assert report.average_time == 0.0
        assert report.avg_time_per_req == 0.0


class TestInitialCartInRunner:
    """The runner applies the initial cart state before the loop."""

    def test_view_cart_reports_initial_state(self) -> None:
        """A view_cart call sees the predefined items and totals."""
        case = TestCase(
            name="view",
            prompt="What's in my cart?",
            expected_tools_variants=[ExpectedToolPath("view", [ExpectedToolCall("view_cart")])],
            initial_cart_state=InitialCartState([InitialCartItem("iPhone 15", 2), InitialCartItem("Cookbook", 1)]),
        )
        routes = {"What's in my cart?": [tool_call("view_cart", "c1")]}
        runner = TestRunner(lambda name: RoutingClient(routes))
        report = runner.run_agent_test_suite([case], ["m"])

        result = report.results[0]
        assert result.success
        cart = result.response.tool_calls[0].result
        assert cart.item_count == 3
        assert cart.total == pytest.approx(2 * 999.99 + 29.99)


class TestPersistence:
    """Tests for report serialisation."""

    def test_save_results_round_trips_fields(self, suite, tmp_path) -> None:
        """The JSON artifact carries counts, timings and per-result detail."""
        cases, routes = suite
        report = TestRunner(lambda name: RoutingClient(routes)).run_agent_test_suite(cases, ["m"])
        path = tmp_path / "out" / "m_agent_test_results_20250101_120000.json"
        save_results(str(path), report)

        data = json.loads(path.read_text())
        assert data["test_suite"] == TEST_SUITE_NAME
        assert data["total_tests"] == 4
        assert data["passed_tests"] == 2
        for key in ("average_time", "total_llm_requests", "total_llm_time", "avg_time_per_request", "timestamp"):
            assert key in data
        tea = next(r for r in data["results"] if r["test_case"]["name"] == "add_tea")
        assert tea["response"]["tool_calls"][0]["tool_name"] == "add_to_cart"
        assert tea["model_name"] == "m"
        broken = next(r for r in data["results"] if r["test_case"]["name"] == "add_broken")
        assert broken["response"] is None

    def test_build_report_counts(self) -> None:
        """Report totals derive from results alone."""
        report = build_report([])
        assert (report.total_tests, report.passed_tests, report.failed_tests) == (0, 0, 0)
        assert report.to_dict()["avg_time_per_request"] == 0.0
        assert "avg_time_per_req" not in report.to_dict()


class TestLoadTestCases:
    """Tests for the test case configuration file."""

    def write(self, tmp_path, data) -> str:
        path = tmp_path / "cases.json"
        path.write_text(json.dumps(data) if not isinstance(data, str) else data)
        return str(path)

    def test_parses_full_entry(self, tmp_path) -> None:
        """Variants, tools, arguments and initial cart state are parsed."""
        path = self.write(tmp_path, [{
            "name": "add",
            "prompt": "Add a yoga mat",
            "initial_cart_state": {"items": [{"product_name": "Cookbook", "quantity": 2}]},
            "expected_tools_variants": [{
                "name": "direct",
                "description": "just add",
                "tools": [{"name": "add_to_cart", "arguments": {"product_name": "Yoga Mat"}}],
            }],
        }])
        [case] = load_test_cases(path)
        assert case.initial_cart_state.items[0].quantity == 2
        assert case.expected_tools_variants[0].description == "just add"
        assert case.expected_tools_variants[0].tools[0].arguments == {"product_name": "Yoga Mat"}

    def test_missing_variants_means_no_tools(self, tmp_path) -> None:
        """An entry without variants expects no tool calls."""
        [case] = load_test_cases(self.write(tmp_path, [{"name": "hi", "prompt": "Hello"}]))
        assert case.expected_tools_variants == []
        assert case.initial_cart_state is None

    def test_filter_by_name(self, tmp_path) -> None:
        """A named test case is selected on its own."""
        path = self.write(tmp_path, [{"name": "a", "prompt": "x"}, {"name": "b", "prompt": "y"}])
        assert [c.name for c in load_test_cases(path, "b")] == ["b"]

    def test_unknown_name_is_fatal(self, tmp_path) -> None:
        """Filtering on a missing name raises a configuration error."""
        path = self.write(tmp_path, [{"name": "a", "prompt": "x"}])
        with pytest.raises(ConfigurationError, match="not found"):
            load_test_cases(path, "zzz")

    def test_missing_file_is_fatal(self, tmp_path) -> None:
        """A missing file raises a configuration error."""
        with pytest.raises(ConfigurationError, match="failed to read"):
            load_test_cases(str(tmp_path / "nope.json"))

    def test_unparseable_file_is_fatal(self, tmp_path) -> None:
        """Invalid JSON or a wrong shape raises a configuration error."""
        with pytest.raises(ConfigurationError, match="failed to parse"):
            load_test_cases(self.write(tmp_path, "{not json"))
        with pytest.raises(ConfigurationError, match="failed to parse"):
            load_test_cases(self.write(tmp_path, {"name": "a"}))
        with pytest.raises(ConfigurationError, match="failed to parse"):
            load_test_cases(self.write(tmp_path, [{"prompt": "no name"}]))

    def test_bundled_config_loads(self) -> None:
        """The shipped example configuration is valid."""
        cases = load_test_cases(str(Path(__file__).resolve().parent.parent / "config" / "test_cases.json"))
        assert len({c.name for c in cases}) == len(cases)

    def test_sanitize_model_name(self) -> None:
        """Model names become safe file name fragments."""
        assert sanitize_model_name("ollama/qwen3:8b") == "ollama_qwen3_8b"


class TestMainCli:
    """End-to-end run of the CLI against a fake model."""

    def test_writes_report_and_request_log(self, tmp_path) -> None:
        """The report lands in the output directory under the model-prefixed name."""
        config = tmp_path / "cases.json"
        config.write_text(json.dumps([{"name": "hello", "prompt": "Hello"}]))
        log_file = tmp_path / "logs" / "requests.jsonl"

        with patch("toolcall_eval.main.create_client", return_value=RoutingClient({"Hello": []})):
            main([
                "--models", "gpt-4o-mini", "--config", str(config),
                "--output-dir", str(tmp_path / "results"), "--log-file", str(log_file),
            ])

        [report_file] = (tmp_path / "results").iterdir()
        assert report_file.name.startswith("gpt-4o-mini_agent_test_results_")
        data = json.loads(report_file.read_text())
        assert data["passed_tests"] == 1
        assert len(log_file.read_text().splitlines()) == 1

    def test_missing_model_exits(self, tmp_path, monkeypatch) -> None:
        """Without any model the CLI exits with status 1."""
        monkeypatch.delenv("OPENAI_MODEL", raising=False)
        with pytest.raises(SystemExit) as exc:
            main(["--config", str(tmp_path / "cases.json")])
        assert exc.value.code == 1
