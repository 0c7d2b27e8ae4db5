from dataclasses import dataclass, field
from typing import Any
from datetime import datetime


@dataclass
class InitialCartItem:
    product_name: str
    quantity: int


@dataclass
class InitialCartState:
    items: list[InitialCartItem]

    def to_dict(self):
        return {
            "items": [
                {"product_name": item.product_name, "quantity": item.quantity}
                for item in self.items
            ]
        }


@dataclass
class ExpectedToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExpectedToolPath:
    name: str
    tools: list[ExpectedToolCall]
    description: str = ""

    def to_dict(self):
        return {
            "name": self.name,
            "description": self.description,
            "tools": [{"name": t.name, "arguments": t.arguments} for t in self.tools],
        }


@dataclass
class TestCase:
    name: str
    prompt: str
    expected_tools_variants: list[ExpectedToolPath]
    initial_cart_state: InitialCartState | None = None

    __test__ = False  # not a pytest test class

    @classmethod
    def from_dict(cls, data: dict) -> "TestCase":
        initial_cart = None
        if data.get("initial_cart_state"):
            items = [
                InitialCartItem(
                    product_name=item["product_name"],
                    quantity=int(item.get("quantity", 1)),
                )
                for item in data["initial_cart_state"].get("items", [])
            ]
            initial_cart = InitialCartState(items=items)

        variants = []
        for variant in data.get("expected_tools_variants") or []:
            tools = [
                ExpectedToolCall(name=tool["name"], arguments=tool.get("arguments") or {})
                for tool in variant.get("tools") or []
            ]
            variants.append(ExpectedToolPath(
                name=variant["name"],
                tools=tools,
                description=variant.get("description", ""),
            ))

        return cls(
            name=data["name"],
            prompt=data["prompt"],
            expected_tools_variants=variants,
            initial_cart_state=initial_cart,
        )

    def to_dict(self):
        data = {
            "name": self.name,
            "prompt": self.prompt,
            "expected_tools_variants": [v.to_dict() for v in self.expected_tools_variants],
        }
        if self.initial_cart_state:
            data["initial_cart_state"] = self.initial_cart_state.to_dict()
        return data


@dataclass
class TestConfig:
    system_prompt: str = ""
    temperature: float = 0.0
    top_k: int = 0
    max_tokens: int = 0

    __test__ = False

    def to_dict(self):
        return {
            "system_prompt": self.system_prompt,
            "temperature": self.temperature,
            "top_k": self.top_k,
            "max_tokens": self.max_tokens,
        }


@dataclass
class Product:
    name: str
    category: str
    price: float
    description: str = ""
    in_stock: bool = True

    def to_dict(self):
        return {
            "name": self.name,
            "category": self.category,
            "price": self.price,
            "description": self.description,
            "in_stock": self.in_stock,
        }


@dataclass
class CartItem:
    product_name: str
    quantity: int
    price: float
    subtotal: float

    def to_dict(self):
        return {
            "product_name": self.product_name,
            "quantity": self.quantity,
            "price": self.price,
            "subtotal": self.subtotal,
        }


@dataclass
class CartSummary:
    session_id: str
    items: list[CartItem] = field(default_factory=list)
    total: float = 0.0
    item_count: int = 0
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self):
        return {
            "session_id": self.session_id,
            "items": [item.to_dict() for item in self.items],
            "total": self.total,
            "item_count": self.item_count,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class CheckoutResult:
    success: bool
    order_id: str
    total: float
    message: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self):
        return {
            "success": self.success,
            "order_id": self.order_id,
            "total": self.total,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ToolCall:
    """A tool call as the model emitted it, with parsed arguments."""
    tool_name: str
    arguments: dict[str, Any]


@dataclass
class ToolCallResult:
    call_id: str
    tool_name: str
    success: bool
    arguments: str
    result: Any = None
    error: str = ""

    def to_dict(self):
        result = self.result
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        elif isinstance(result, list):
            result = [r.to_dict() if hasattr(r, "to_dict") else r for r in result]
        data = {
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "success": self.success,
            "arguments": self.arguments,
            "result": result,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ChatMessage:
    role: str
    content: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ChatSession:
    session_id: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class ChatResponse:
    message: str
    session_id: str
    tool_calls: list[ToolCallResult]
    llm_requests: int
    llm_total_time: float
    cart_summary: CartSummary | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self):
        return {
            "message": self.message,
            "session_id": self.session_id,
            "cart_summary": self.cart_summary.to_dict() if self.cart_summary else None,
            "timestamp": self.timestamp.isoformat(),
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "llm_requests": self.llm_requests,
            "llm_total_time": self.llm_total_time,
        }


@dataclass(frozen=True)
class AgentTestResult:
    test_case: TestCase
    model_name: str
    success: bool
    response_time: float
    config: TestConfig = field(default_factory=TestConfig)
    response: ChatResponse | None = None
    matched_path: str = ""
    error_message: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self):
        return {
            "test_case": self.test_case.to_dict(),
            "model_name": self.model_name,
            "config": self.config.to_dict(),
            "response": self.response.to_dict() if self.response else None,
            "success": self.success,
            "matched_path": self.matched_path,
            "error_message": self.error_message,
            "timestamp": self.timestamp.isoformat(),
            "response_time": self.response_time,
        }


@dataclass(frozen=True)
class AgentReport:
    timestamp: datetime
    test_suite: str
    results: list[AgentTestResult]
    total_tests: int
    passed_tests: int
    failed_tests: int
    average_time: float
    total_llm_requests: int
    total_llm_time: float
    avg_time_per_req: float

    def to_dict(self):
        return {
            "timestamp": self.timestamp.isoformat(),
            "test_suite": self.test_suite,
            "results": [r.to_dict() for r in self.results],
            "total_tests": self.total_tests,
            "passed_tests": self.passed_tests,
            "failed_tests": self.failed_tests,
            "average_time": self.average_time,
            "total_llm_requests": self.total_llm_requests,
            "total_llm_time": self.total_llm_time,
            "avg_time_per_request": self.avg_time_per_req,
        }
