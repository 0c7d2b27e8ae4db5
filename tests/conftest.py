"""Shared fixtures: a scripted fake model client and fresh cart/executor instances."""

import json
import threading

import pytest

from toolcall_eval.cart import CartStore
from toolcall_eval.clients import ModelClient, ModelReply, RequestedToolCall
from toolcall_eval.errors import ModelEndpointError
from toolcall_eval.models import ExpectedToolCall, ExpectedToolPath, TestCase
from toolcall_eval.tools import ToolExecutor, get_product_price


def tool_call(name: str, call_id: str = "", **arguments) -> RequestedToolCall:
    return RequestedToolCall(id=call_id or f"call_{name}", name=name, arguments=json.dumps(arguments))


class ScriptedClient(ModelClient):
    """Returns canned replies in order; an Exception in the script is raised instead."""

    def __init__(self, script, model: str = "fake-model"):
        self.model = model
        self.endpoint_url = "http://fake/v1/chat/completions"
        self.script = list(script)
        self.requests = []
        self._lock = threading.Lock()

    def create_completion(self, messages, tools, temperature=0.0, max_tokens=0):
        with self._lock:
            self.requests.append({
                "messages": [dict(m) for m in messages],
                "tools": tools,
                "temperature": temperature,
                "max_tokens": max_tokens,
            })
            step = self.script.pop(0) if self.script else ModelReply(content="Done.")
        if isinstance(step, Exception):
            raise step
        return step


class RoutingClient(ModelClient):
    """Picks a reply by prompt text, so concurrent tests get deterministic answers."""

    def __init__(self, routes: dict, model: str = "routing-model"):
        self.model = model
        self.endpoint_url = "http://fake/v1/chat/completions"
        self.routes = routes

    def create_completion(self, messages, tools, temperature=0.0, max_tokens=0):
        prompt = next(m["content"] for m in messages if m["role"] == "user")
        already_called = any(m["role"] == "tool" for m in messages)
        route = self.routes[prompt]
        if isinstance(route, Exception):
            raise route
        if already_called or not route:
            return ModelReply(content="All done.")
        return ModelReply(content="", tool_calls=list(route))


@pytest.fixture
def cart_store() -> CartStore:
    return CartStore(get_product_price)


@pytest.fixture
def executor(cart_store) -> ToolExecutor:
    return ToolExecutor(cart_store)


@pytest.fixture
def add_iphone_case() -> TestCase:
    return TestCase(
        name="add_iphone",
        prompt="Add an iPhone 15 to my cart",
        expected_tools_variants=[
            ExpectedToolPath(
                name="direct_add",
                tools=[ExpectedToolCall("add_to_cart", {"product_name": "iPhone 15", "quantity": 1})],
            ),
        ],
    )


@pytest.fixture
def greeting_case() -> TestCase:
    return TestCase(name="greeting", prompt="Hello", expected_tools_variants=[])


@pytest.fixture
def endpoint_error() -> ModelEndpointError:
    return ModelEndpointError("failed to get AI response: connection refused")
