#!/usr/bin/env python3
import argparse
import json
import os
import sys
import time
from collections import defaultdict
from datetime import datetime
from pathlib import Path

from .clients import create_client
from .errors import ConfigurationError, ToolEvalError
from .models import AgentReport, TestCase, TestConfig
from .request_logger import RequestLogger
from .runner import TestRunner, save_results

DEFAULT_CONFIG_SYSTEM_PROMPT = (
    "You are a helpful shopping assistant for chat2cart, an AI-powered shopping platform. "
    "Your role is to help users discover products, manage their shopping cart, and complete "
    "purchases through natural conversation.\n\n"
    "When users ask about products, use the search_products tool to find relevant items. "
    "When they want to add items to their cart, use the appropriate cart management tools."
)


def load_test_cases(config_file: str, test_case_name: str | None = None) -> list[TestCase]:
    """Load test cases from JSON file, optionally keeping only the named one."""
    try:
        with open(config_file, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigurationError(f"failed to read test cases file: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"failed to parse test cases: {e}") from e

    if not isinstance(data, list):
        raise ConfigurationError("failed to parse test cases: expected a list of test case objects")

    try:
        test_cases = [TestCase.from_dict(tc) for tc in data]
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ConfigurationError(f"failed to parse test cases: invalid entry ({e!r})") from e

    if not test_case_name:
        return test_cases

    for test_case in test_cases:
        if test_case.name == test_case_name:
            return [test_case]
    raise ConfigurationError(f"test case '{test_case_name}' not found in configuration file")


def sanitize_model_name(model_name: str) -> str:
    return model_name.replace("/", "_").replace(":", "_").replace(" ", "_")


def print_summary(report: AgentReport):
    """Print test summary."""
    print("\n" + "=" * 60)
    print("📈 FINAL SUMMARY")
    print("=" * 60)
    print(f"Total Tests:        {report.total_tests}")
    print(f"✅ Passed:          {report.passed_tests}")
    print(f"❌ Failed:          {report.failed_tests}")
    if report.total_tests:
        print(f"📊 Success Rate:    {report.passed_tests / report.total_tests * 100:.2f}%")
    print(f"⏱️  Average Time:    {report.average_time:.2f}s")
    print(f"🔁 LLM Requests:    {report.total_llm_requests}")
    print(f"⏱️  Total LLM Time:  {report.total_llm_time:.2f}s")
    print(f"⏱️  Avg per Request: {report.avg_time_per_req:.2f}s")
    print("=" * 60)

    by_test_case = defaultdict(list)
    for result in report.results:
        by_test_case[result.test_case.name].append(result)

    print("\n📋 Test Case Results:")
    print("-" * 60)
    for name in sorted(by_test_case):
        results = by_test_case[name]
        passed = sum(1 for r in results if r.success)
        avg_time = sum(r.response_time for r in results) / len(results)
        print(f"{name}: runs={len(results)} ✅ {passed} ❌ {len(results) - passed} "
              f"avg={avg_time:.2f}s")
        for r in results:
            if r.error_message:
                print(f"    [{r.model_name}] error: {r.error_message}")


def wait_for_server(base_url: str, server_name: str, timeout: int = 30):
    """Wait for a local server to be ready."""
    import urllib.request
    import urllib.error

    health_url = base_url.replace("/v1", "") if "/v1" in base_url else base_url

    print(f"⏳ Waiting for {server_name} at {health_url}...")

    start = time.time()
    while time.time() - start < timeout:
        try:
            urllib.request.urlopen(health_url, timeout=2)
            print(f"✅ {server_name} is ready")
            return True
        except (urllib.error.URLError, ConnectionError):
            time.sleep(1)

    print(f"❌ {server_name} not ready after {timeout}s")
    return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tool-calling accuracy test for chat models")
    parser.add_argument("--api-key", default=os.getenv("OPENAI_API_KEY", "DMR"))
    parser.add_argument("--base-url", default=os.getenv("OPENAI_BASE_URL", "http://localhost:12434/engines/v1"))
    parser.add_argument("--models", default=os.getenv("OPENAI_MODEL", ""),
                        help="Comma-separated list of models to test (prefix bedrock/, ollama/ or llama.cpp/ to pick a backend)")
    parser.add_argument("--model", default=None, help="Single model to test (overrides --models)")
    parser.add_argument("--config", default="config/test_cases.json")
    parser.add_argument("--test-case", default=None, help="Run only the named test case")
    parser.add_argument("--host", default="localhost", help="Hostname for Ollama/llama.cpp backends")
    parser.add_argument("--max-tokens", type=int, default=1000)
    parser.add_argument("--system-prompt", default=DEFAULT_CONFIG_SYSTEM_PROMPT)
    parser.add_argument("--max-workers", type=int, default=None,
                        help="Cap on concurrent test executions (default: one per execution)")
    parser.add_argument("--output-dir", default="results")
    parser.add_argument("--log-file", default=None, help="JSONL request log (default: logs/requests_<timestamp>.jsonl)")
    parser.add_argument("--wait-timeout", type=int, default=30, help="Seconds to wait for local servers")
    return parser


def main(argv: list[str] | None = None):
    args = build_parser().parse_args(argv)

    model_spec = args.model or args.models
    model_names = [m.strip() for m in model_spec.split(",") if m.strip()]
    if not model_names:
        print("❌ Error: no model specified (use --models or --model)", file=sys.stderr)
        sys.exit(1)

    try:
        test_cases = load_test_cases(args.config, args.test_case)
    except ConfigurationError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        sys.exit(1)

    for name in model_names:
        if name.startswith("ollama/"):
            if not wait_for_server(f"http://{args.host}:11434/v1", "Ollama", args.wait_timeout):
                print("\n💡 Tip: Start Ollama with 'ollama serve' in another terminal")
                sys.exit(1)
        elif name.startswith("llama.cpp/"):
            if not wait_for_server(f"http://{args.host}:8080/v1", "llama.cpp server", args.wait_timeout):
                print("\n💡 Tip: Start llama.cpp server with './server -m <model>' in another terminal")
                sys.exit(1)

    config = TestConfig(system_prompt=args.system_prompt, temperature=0.0, max_tokens=args.max_tokens)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    sanitized = "+".join(sanitize_model_name(m) for m in model_names)
    output_file = str(Path(args.output_dir) / f"{sanitized}_agent_test_results_{timestamp}.json")
    log_file = args.log_file or f"logs/requests_{timestamp}.jsonl"

    print("🚀 Starting Agent Loop Tool Efficiency Test")
    print("📊 Configuration:")
    print(f"   Models: {', '.join(model_names)}")
    print(f"   Base URL: {args.base_url}")
    if args.test_case:
        print(f"   Single Test Case: {args.test_case}")
    print(f"   Test Cases: {len(test_cases)}")
    print(f"   Total Tests: {len(test_cases) * len(model_names)}")
    print(f"   Max Tokens: {config.max_tokens}")
    print(f"   Output: {output_file}")
    print(f"   Request Log: {log_file}\n")

    def client_factory(model_name):
        return create_client(model_name, api_key=args.api_key, base_url=args.base_url, host=args.host)

    start = time.time()
    try:
        with RequestLogger(log_file) as logger:
            runner = TestRunner(client_factory, logger=logger, max_workers=args.max_workers)
            report = runner.run_agent_test_suite(test_cases, model_names, [config])
        save_results(output_file, report)
    except ToolEvalError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"❌ Error: failed to write output: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"\n✅ Tests completed in {time.time() - start:.2f}s")
    print_summary(report)
    print(f"\n💾 Results saved to: {output_file}")


if __name__ == "__main__":
    main()
