import json
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path


class RequestLogger:
    """Append-only JSON Lines log of model requests and responses, one line per loop iteration."""

    def __init__(self, log_file: str):
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._file = open(path, "w", encoding="utf-8")
        self._lock = threading.Lock()

    def log_request(self, test_case: str, model: str, iteration: int, url: str, request: dict, response: dict):
        self._write({
            "timestamp": _now(),
            "test_case": test_case,
            "model": model,
            "iteration": iteration,
            "request": {"method": "POST", "url": url, "body": request},
            "response": {"status_code": 200, "body": response},
        })

    def log_error(self, test_case: str, model: str, iteration: int, url: str, request: dict, error: Exception):
        self._write({
            "timestamp": _now(),
            "test_case": test_case,
            "model": model,
            "iteration": iteration,
            "request": {"method": "POST", "url": url, "body": request},
            # status unknown for transport errors
            "response": {"status_code": 0, "body": None},
            "error": str(error),
        })

    def _write(self, entry: dict):
        try:
            line = json.dumps(entry, default=str)
            with self._lock:
                self._file.write(line + "\n")
                self._file.flush()
        except (OSError, ValueError) as e:
            print(f"⚠️  Failed to write request log entry: {e}", file=sys.stderr)

    def close(self):
        with self._lock:
            if not self._file.closed:
                self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
