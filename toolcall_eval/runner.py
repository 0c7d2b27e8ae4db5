import json
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Callable

from .agent import MAX_ITERATIONS, AgentLoop
from .cart import CartStore
from .clients import ModelClient
from .matcher import actual_tool_calls, evaluate
from .models import AgentReport, AgentTestResult, ChatSession, TestCase, TestConfig
from .request_logger import RequestLogger
from .tools import ToolExecutor, get_product_price

TEST_SUITE_NAME = "Agent Loop Tool Efficiency Test"


class TestRunner:
    """Runs every (test case, model, config) triple concurrently and aggregates a report.

    One CartStore is shared by all units; each unit gets its own session id
    so carts never leak between tests.
    """

    __test__ = False

    def __init__(
        self,
        client_factory: Callable[[str], ModelClient],
        cart_store: CartStore | None = None,
        logger: RequestLogger | None = None,
        max_workers: int | None = None,
        max_iterations: int = MAX_ITERATIONS,
    ):
        self.client_factory = client_factory
        self.cart_store = cart_store or CartStore(get_product_price)
        self.executor = ToolExecutor(self.cart_store)
        self.logger = logger
        self.max_workers = max_workers
        self.max_iterations = max_iterations

    def run_agent_test_suite(
        self,
        test_cases: list[TestCase],
        model_names: list[str],
        configs: list[TestConfig] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> AgentReport:
        configs = configs or [TestConfig()]
        # Build every client up front; factory errors abort the suite
        clients = {name: self.client_factory(name) for name in model_names}

        triples = [(tc, name, config) for tc in test_cases for name in model_names for config in configs]
        print(f"Starting agent test suite with {len(triples)} test executions")

        results: list[AgentTestResult] = []
        if triples:
            workers = self.max_workers or len(triples)
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [
                    pool.submit(self.run_agent_test, tc, name, config, clients[name], cancel_event)
                    for tc, name, config in triples
                ]
                # Completion order, not submission order
                for future in as_completed(futures):
                    results.append(future.result())

        return build_report(results)

    def run_agent_test(
        self,
        test_case: TestCase,
        model_name: str,
        config: TestConfig,
        client: ModelClient,
        cancel_event: threading.Event | None = None,
    ) -> AgentTestResult:
        """Run one triple. Any failure becomes a failed result rather than an exception."""
        start = time.perf_counter()
        session_id = f"test_{test_case.name}_{uuid.uuid4().hex}"
        prefix = f"[{model_name}] {test_case.name}"
        print(f"{prefix}: running")

        try:
            self.cart_store.initialize_cart_state(session_id, test_case.initial_cart_state)
            loop = AgentLoop(client, self.executor, self.cart_store,
                             logger=self.logger, max_iterations=self.max_iterations)
            response = loop.process_chat_message(
                test_case.prompt,
                session=ChatSession(session_id=session_id),
                config=config,
                test_case=test_case.name,
                cancel_event=cancel_event,
            )
        except Exception as e:
            elapsed = time.perf_counter() - start
            print(f"{prefix}: ❌ ERROR - {e}")
            return AgentTestResult(
                test_case=test_case,
                model_name=model_name,
                config=config,
                success=False,
                error_message=str(e),
                response_time=elapsed,
            )
        elapsed = time.perf_counter() - start

        success, matched_path = evaluate(test_case, actual_tool_calls(response.tool_calls))
        called = ", ".join(tc.tool_name for tc in response.tool_calls) or "(none)"
        if success:
            print(f"{prefix}: ✅ PASSED - matched {matched_path} [{called}] in {elapsed:.2f}s")
        else:
            print(f"{prefix}: ❌ FAILED - no variant matched [{called}] in {elapsed:.2f}s")

        return AgentTestResult(
            test_case=test_case,
            model_name=model_name,
            config=config,
            response=response,
            success=success,
            matched_path=matched_path,
            response_time=elapsed,
        )


def build_report(results: list[AgentTestResult]) -> AgentReport:
    passed = sum(1 for r in results if r.success)
    total_time = sum(r.response_time for r in results)
    completed = [r.response for r in results if r.response is not None]
    total_llm_requests = sum(r.llm_requests for r in completed)
    total_llm_time = sum(r.llm_total_time for r in completed)

    return AgentReport(
        timestamp=datetime.now(),
        test_suite=TEST_SUITE_NAME,
        results=results,
        total_tests=len(results),
        passed_tests=passed,
        failed_tests=len(results) - passed,
        average_time=total_time / len(results) if results else 0.0,
        total_llm_requests=total_llm_requests,
        total_llm_time=total_llm_time,
        avg_time_per_req=total_llm_time / total_llm_requests if total_llm_requests else 0.0,
    )


def save_results(filename: str, report: AgentReport):
    """Write the report as indented JSON."""
    path = Path(filename)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2)
