#!/usr/bin/env python3
"""
Batch analysis tool for model test results.

Analyzes test result JSON files to calculate precision, recall, and F1 metrics
for tool invocation and tool selection. All results for a model are
concatenated across its result files before the metrics are computed.
"""

import argparse
import json
import os
import re
import sys
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import List, Dict, Optional

from toolcall_eval.errors import AnalysisError


@dataclass
class MetricSet:
    """Represents precision, recall, and F1 metrics."""
    precision: float
    recall: float
    f1: float
    true_positives: int
    false_positives: int
    true_negatives: int
    false_negatives: int

    def to_dict(self):
        return asdict(self)


@dataclass
class RunMetrics:
    """Metrics for a single result file, reported alongside the aggregate."""
    file_path: str
    tool_invocation: MetricSet
    tool_selection: MetricSet
    test_count: int

    def to_dict(self):
        return asdict(self)


@dataclass
class ModelAnalysis:
    """Analysis results for a single model."""
    model_name: str
    batch_source: str
    tool_invocation: MetricSet
    tool_selection: MetricSet
    average_response_time: float
    average_latency_per_call: float
    total_tests: int
    unique_tests: int
    total_runs: int
    result_files: List[str]
    per_run_metrics: List[RunMetrics]

    def to_dict(self):
        return asdict(self)


@dataclass
class BatchAnalysisReport:
    """Complete analysis report."""
    batch_directories: List[str]
    analysis_date: datetime
    models: List[ModelAnalysis]
    summary: str

    def to_dict(self):
        return {
            "batch_directory": ", ".join(self.batch_directories),
            "batch_directories": self.batch_directories,
            "analysis_date": self.analysis_date.isoformat(),
            "models": [m.to_dict() for m in self.models],
            "summary": self.summary,
        }


RESULT_FILE_PATTERN = re.compile(r'.*agent_test_results_.*\.json$')
# {model}_agent_test_results_{...}.json
MODEL_PREFIX_PATTERN = re.compile(r'^(.+?)_agent_test_results_')
# agent_test_results_{model}_{YYYYMMDD}_{HHMMSS}.json
MODEL_INFIX_PATTERN = re.compile(r'^agent_test_results_(.+?)_\d{8}_\d{6}\.json$')


def find_result_files(directory: str) -> List[str]:
    """Find all agent test result files in the directory."""
    return sorted(
        os.path.join(root, name)
        for root, _, names in os.walk(directory)
        for name in names
        if RESULT_FILE_PATTERN.match(name)
    )


def model_name_from_filename(basename: str) -> str:
    matches = MODEL_PREFIX_PATTERN.match(basename)
    if matches:
        return matches.group(1)

    matches = MODEL_INFIX_PATTERN.match(basename)
    if matches:
        return matches.group(1)

    # Positional fallback: first token of a name with enough parts
    parts = basename.split("_")
    if len(parts) >= 4:
        return parts[0]
    return "unknown"


def group_files_by_model(files: List[str], batch_dirs: List[str]) -> Dict[str, Dict]:
    """Group result files by model name and track batch source."""
    model_files = {}

    for file in files:
        model_name = model_name_from_filename(os.path.basename(file))

        batch_source = "unknown"
        for batch_dir in batch_dirs:
            if file.startswith(batch_dir):
                batch_source = batch_dir
                break

        entry = model_files.setdefault(model_name, {"files": [], "sources": []})
        entry["files"].append(file)
        if batch_source not in entry["sources"]:
            entry["sources"].append(batch_source)

    for entry in model_files.values():
        entry["batch_source"] = ",".join(entry.pop("sources"))

    return model_files


def load_result_file(filename: str) -> List[Dict]:
    """Load test results from a JSON file.

    Accepts a report object with a "results" list or a bare list of results.
    Raises OSError or ValueError for unreadable or malformed files.
    """
    with open(filename, 'r', encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict) and isinstance(data.get("results"), list):
        results = data["results"]
    elif isinstance(data, list):
        results = data
    else:
        raise ValueError("expected a report object with a results list")

    for index, result in enumerate(results):
        check_result_shape(result, index)
    return results


def check_result_shape(result, index: int):
    """Raise ValueError unless a result has the fields the metrics read, with usable types."""
    if not isinstance(result, dict):
        raise ValueError(f"result {index} is not an object")

    test_case = result.get("test_case")
    if test_case is not None:
        if not isinstance(test_case, dict):
            raise ValueError(f"result {index}: test_case is not an object")
        if not isinstance(test_case.get("name") or "", str):
            raise ValueError(f"result {index}: test_case name is not a string")
        variants = test_case.get("expected_tools_variants") or []
        if not isinstance(variants, list):
            raise ValueError(f"result {index}: expected_tools_variants is not a list")
        for variant in variants:
            if not isinstance(variant, dict) or not isinstance(variant.get("tools") or [], list):
                raise ValueError(f"result {index}: malformed expected tools variant")
            for tool in variant.get("tools") or []:
                if not isinstance(tool, dict) or not isinstance(tool.get("name"), str):
                    raise ValueError(f"result {index}: expected tool without a name")

    response = result.get("response")
    if response is not None:
        if not isinstance(response, dict):
            raise ValueError(f"result {index}: response is not an object")
        tool_calls = response.get("tool_calls") or []
        if not isinstance(tool_calls, list) or not all(isinstance(tc, dict) for tc in tool_calls):
            raise ValueError(f"result {index}: malformed tool_calls")
        try:
            float(response.get("llm_total_time") or 0.0)
            int(response.get("llm_requests") or 0)
        except (TypeError, ValueError) as e:
            raise ValueError(f"result {index}: non-numeric LLM timing fields") from e

    try:
        float(result.get("response_time") or 0.0)
    except (TypeError, ValueError) as e:
        raise ValueError(f"result {index}: non-numeric response_time") from e


def should_call_any_tool(test_case: Dict) -> bool:
    """Determine if any tool should be called for a test case."""
    for variant in test_case.get("expected_tools_variants") or []:
        if len(variant.get("tools") or []) > 0:
            return True
    return False


def get_expected_tools(test_case: Dict) -> List[str]:
    """Get all expected tool names from all variants, flattened."""
    tools = []
    for variant in test_case.get("expected_tools_variants") or []:
        for tool in variant.get("tools") or []:
            tools.append(tool["name"])
    return tools


def get_actual_tools(response: Optional[Dict]) -> List[str]:
    """Get all actual tool names called, in emission order."""
    if not response:
        return []

    tool_calls = response.get("tool_calls") or []
    return [tc.get("tool_name", tc.get("name", "")) for tc in tool_calls]


def matches_variant(expected_tools: List[Dict], actual_tools: List[str]) -> bool:
    """Exact tool-name sequence match against one variant."""
    return [tool["name"] for tool in expected_tools] == actual_tools


def matches_any_variant(test_case: Dict, actual_tools: List[str]) -> bool:
    for variant in test_case.get("expected_tools_variants") or []:
        if matches_variant(variant.get("tools") or [], actual_tools):
            return True
    return False


def calculate_metrics(tp: int, fp: int, tn: int, fn: int) -> MetricSet:
    """Calculate precision, recall, and F1 from confusion matrix values."""
    precision = tp / (tp + fp) if (tp + fp) > 0 else 0.0
    recall = tp / (tp + fn) if (tp + fn) > 0 else 0.0
    f1 = 2 * (precision * recall) / (precision + recall) if (precision + recall) > 0 else 0.0

    return MetricSet(
        precision=precision,
        recall=recall,
        f1=f1,
        true_positives=tp,
        false_positives=fp,
        true_negatives=tn,
        false_negatives=fn,
    )


def calculate_tool_invocation_metrics(results: List[Dict]) -> MetricSet:
    """Binary metrics: should any tool be called vs. was any tool called."""
    tp = fp = tn = fn = 0

    for result in results:
        should_call = should_call_any_tool(result.get("test_case") or {})
        # A missing response (errored test) counts as no tools called
        did_call = len(get_actual_tools(result.get("response"))) > 0

        if should_call and did_call:
            tp += 1
        elif not should_call and not did_call:
            tn += 1
        elif not should_call and did_call:
            fp += 1
        else:
            fn += 1

    return calculate_metrics(tp, fp, tn, fn)


def calculate_tool_selection_metrics(results: List[Dict]) -> MetricSet:
    """Specific metrics: was the right tool sequence selected.

    Emptiness is judged on the tools of all variants flattened together;
    correctness requires the actual tool names to equal one variant's
    sequence exactly. Arguments are not considered.
    """
    tp = fp = tn = fn = 0

    for result in results:
        test_case = result.get("test_case") or {}
        expected_tools = get_expected_tools(test_case)
        actual_tools = get_actual_tools(result.get("response"))

        if not expected_tools and not actual_tools:
            tn += 1
        elif not expected_tools:
            fp += 1
        elif not actual_tools:
            fn += 1
        elif matches_any_variant(test_case, actual_tools):
            tp += 1
        else:
            fp += 1  # wrong tools called

    return calculate_metrics(tp, fp, tn, fn)


def calculate_average_response_time(results: List[Dict]) -> float:
    """Mean wall-clock response time in seconds."""
    if not results:
        return 0.0
    return sum(float(r.get("response_time") or 0.0) for r in results) / len(results)


def calculate_average_latency_per_llm_call(results: List[Dict]) -> float:
    """Total LLM time divided by total LLM requests over results that have a response."""
    total_llm_time = 0.0
    total_llm_requests = 0

    for r in results:
        response = r.get("response")
        if response:
            total_llm_time += float(response.get("llm_total_time") or 0.0)
            total_llm_requests += int(response.get("llm_requests") or 0)

    if total_llm_requests == 0:
        return 0.0
    return total_llm_time / total_llm_requests


def analyze_model(model_name: str, files: List[str], batch_source: str = "") -> ModelAnalysis:
    """Analyze all result files for a single model.

    Results from every readable file are concatenated; unreadable or
    malformed files are skipped with a warning.
    """
    all_results = []
    per_run_metrics = []
    used_files = []

    for file in files:
        try:
            results = load_result_file(file)
        except (OSError, ValueError) as e:
            print(f"Warning: skipping {file}: {e}", file=sys.stderr)
            continue

        used_files.append(file)
        all_results.extend(results)
        per_run_metrics.append(RunMetrics(
            file_path=file,
            tool_invocation=calculate_tool_invocation_metrics(results),
            tool_selection=calculate_tool_selection_metrics(results),
            test_count=len(results),
        ))

    if not all_results:
        raise AnalysisError(f"no test results found for model {model_name}")

    test_ids = set()
    for result in all_results:
        name = (result.get("test_case") or {}).get("name")
        if name:
            test_ids.add(name)

    return ModelAnalysis(
        model_name=model_name,
        batch_source=batch_source,
        tool_invocation=calculate_tool_invocation_metrics(all_results),
        tool_selection=calculate_tool_selection_metrics(all_results),
        average_response_time=calculate_average_response_time(all_results),
        average_latency_per_call=calculate_average_latency_per_llm_call(all_results),
        total_tests=len(all_results),
        unique_tests=len(test_ids),
        total_runs=len(used_files),
        result_files=used_files,
        per_run_metrics=per_run_metrics,
    )


def analyze_batches(batch_dirs: List[str]) -> BatchAnalysisReport:
    """Analyze all result files across one or more batch directories as one combined batch."""
    all_result_files = []
    for batch_dir in batch_dirs:
        all_result_files.extend(find_result_files(batch_dir))

    if not all_result_files:
        raise AnalysisError(f"no result files found in directories: {', '.join(batch_dirs)}")

    model_files = group_files_by_model(all_result_files, batch_dirs)

    models = []
    for model_name, info in model_files.items():
        try:
            models.append(analyze_model(model_name, info["files"], info["batch_source"]))
        except AnalysisError as e:
            print(f"Warning: failed to analyze model {model_name}: {e}", file=sys.stderr)

    # Sort by F1 score (tool selection) descending
    models.sort(key=lambda m: m.tool_selection.f1, reverse=True)

    return BatchAnalysisReport(
        batch_directories=batch_dirs,
        analysis_date=datetime.now(),
        models=models,
        summary=generate_summary(models),
    )


def generate_summary(models: List[ModelAnalysis]) -> str:
    """Generate a summary of the analysis."""
    if not models:
        return "No models analyzed."

    lines = ["Summary:", "--------"]

    if len(models) == 1:
        model = models[0]
        lines.append(f"Analyzed 1 model ({model.model_name}) with {model.total_tests} tests "
                     f"across {model.total_runs} runs.")
    else:
        total_tests = sum(m.total_tests for m in models)
        total_runs = sum(m.total_runs for m in models)
        best = models[0]
        lines.append(f"Analyzed {len(models)} models with {total_tests} total tests across {total_runs} runs.")
        lines.append(f"Best performing model: {best.model_name} (Tool Selection F1: {best.tool_selection.f1:.3f})")

    return "\n".join(lines)


def _metric_lines(title: str, metrics: MetricSet) -> List[str]:
    return [
        f"  {title}:",
        f"    Precision: {metrics.precision:.3f} "
        f"({metrics.true_positives}/{metrics.true_positives + metrics.false_positives})",
        f"    Recall: {metrics.recall:.3f} "
        f"({metrics.true_positives}/{metrics.true_positives + metrics.false_negatives})",
        f"    F1: {metrics.f1:.3f}",
    ]


def generate_text_report(report: BatchAnalysisReport) -> str:
    """Generate a human-readable text report."""
    lines = [
        "Batch Analysis Report",
        "=====================",
        f"Batch Directories: {', '.join(report.batch_directories)}",
        f"Analysis Date: {report.analysis_date.strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "Model Performance Summary:",
        "--------------------------",
    ]

    for model in report.models:
        lines.append(f"{model.model_name}:")
        if model.batch_source:
            lines.append(f"  Batch Source: {model.batch_source}")
        lines.append(f"  Runs: {model.total_runs}, Tests: {model.total_tests}, Unique Tests: {model.unique_tests}")
        lines.append(f"  Average Response Time: {model.average_response_time:.2f}s")
        lines.append(f"  Average Latency per LLM Call: {model.average_latency_per_call:.2f}s")
        lines.extend(_metric_lines("Tool Invocation (Binary)", model.tool_invocation))
        lines.extend(_metric_lines("Tool Selection", model.tool_selection))
        if model.total_runs > 1:
            lines.append("  Per-run F1 scores:")
            for i, run in enumerate(model.per_run_metrics, 1):
                lines.append(f"    Run {i}: Invocation={run.tool_invocation.f1:.3f}, "
                             f"Selection={run.tool_selection.f1:.3f} ({os.path.basename(run.file_path)})")
        lines.append("")

    if len(report.models) > 1:
        lines.append("Overall Rankings (by Tool Selection F1):")
        lines.append("-----------------------------------------")
        for i, model in enumerate(report.models, 1):
            lines.append(f"{i}. {model.model_name} (F1: {model.tool_selection.f1:.3f}, "
                         f"Avg Response: {model.average_response_time:.2f}s)")
        lines.append("")

    lines.append(report.summary)

    return "\n".join(lines)


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="Analyze one or more batch directories of test results.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "batch_dirs",
        nargs="+",
        help="One or more batch directories to analyze (multiple directories treated as combined batch)"
    )
    parser.add_argument(
        "-o", "--output",
        help="Output file path (default: stdout)"
    )
    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    args = parser.parse_args(argv)

    for batch_dir in args.batch_dirs:
        if not os.path.isdir(batch_dir):
            print(f"Error: Batch directory does not exist: {batch_dir}", file=sys.stderr)
            sys.exit(1)

    try:
        report = analyze_batches(args.batch_dirs)
    except AnalysisError as e:
        print(f"Error: Failed to analyze batches: {e}", file=sys.stderr)
        sys.exit(1)

    if args.format == "json":
        output = json.dumps(report.to_dict(), indent=2)
    else:
        output = generate_text_report(report)

    if args.output:
        with open(args.output, 'w', encoding="utf-8") as f:
            f.write(output)
        print(f"Analysis report written to: {args.output}")
    else:
        print(output)


if __name__ == "__main__":
    main()
