import enum
import secrets
import threading
import time

from .cart import CartStore
from .clients import ModelClient, ModelReply, generate_call_id
from .errors import LoopCancelledError
from .models import ChatResponse, ChatSession, TestConfig, ToolCallResult
from .request_logger import RequestLogger
from .tools import TOOLS, ToolExecutor, tool_result_content


MAX_ITERATIONS = 5

MAX_ITERATIONS_MESSAGE = (
    "I've reached the maximum number of operations I can perform. "
    "Let me know if you need anything else!"
)

DEFAULT_SYSTEM_PROMPT = """You are a helpful shopping assistant. You can help users search for products, manage their shopping cart, and complete purchases.

Available tools:
- search_products: Search for products by query, category, or both
- add_to_cart: Add products to the shopping cart
- remove_from_cart: Remove products from the shopping cart
- view_cart: View current cart contents and totals
- checkout: Process checkout for the current cart

Always be helpful and provide clear information about products and cart operations.
If the user asks anything else, politely decline and say you are a shopping assistant.
"""


class LoopState(enum.Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTE_TOOLS = "execute_tools"
    DONE = "done"


class AgentLoop:
    """Bounded tool-calling conversation for a single prompt.

    AWAITING_MODEL -> EXECUTE_TOOLS -> AWAITING_MODEL ... -> DONE. The loop
    ends when the model replies without tool calls, or after
    `max_iterations` rounds of tool calls, in which case the final message
    is replaced with MAX_ITERATIONS_MESSAGE. Transport errors from the
    client propagate unchanged.
    """

    def __init__(
        self,
        client: ModelClient,
        executor: ToolExecutor,
        cart_store: CartStore,
        logger: RequestLogger | None = None,
        max_iterations: int = MAX_ITERATIONS,
    ):
        self.client = client
        self.executor = executor
        self.cart_store = cart_store
        self.logger = logger
        self.max_iterations = max_iterations

    def process_chat_message(
        self,
        user_message: str,
        session: ChatSession | None = None,
        config: TestConfig | None = None,
        test_case: str = "",
        cancel_event: threading.Event | None = None,
    ) -> ChatResponse:
        config = config or TestConfig()
        session_id = session.session_id if session and session.session_id else generate_session_id()
        messages = build_messages(session, user_message, config.system_prompt or DEFAULT_SYSTEM_PROMPT)

        tool_results: list[ToolCallResult] = []
        response_message = ""
        llm_requests = 0
        llm_total_time = 0.0
        iteration = 0
        reply: ModelReply | None = None
        state = LoopState.AWAITING_MODEL

        while state is not LoopState.DONE:
            if state is LoopState.AWAITING_MODEL:
                if iteration >= self.max_iterations:
                    response_message = MAX_ITERATIONS_MESSAGE
                    state = LoopState.DONE
                    continue
                if cancel_event is not None and cancel_event.is_set():
                    raise LoopCancelledError(f"test suite cancelled before iteration {iteration + 1}")

                reply, elapsed = self._request(messages, config, test_case, iteration + 1)
                llm_requests += 1
                llm_total_time += elapsed
                response_message = reply.content

                state = LoopState.EXECUTE_TOOLS if reply.tool_calls else LoopState.DONE

            elif state is LoopState.EXECUTE_TOOLS:
                messages.append(_assistant_message(reply))
                for requested in reply.tool_calls:
                    result = self.executor.execute(requested.id, requested.name, requested.arguments, session_id)
                    tool_results.append(result)
                    messages.append({
                        "role": "tool",
                        "tool_call_id": requested.id,
                        "content": tool_result_content(result),
                    })
                iteration += 1
                state = LoopState.AWAITING_MODEL

        return ChatResponse(
            message=response_message,
            session_id=session_id,
            tool_calls=tool_results,
            llm_requests=llm_requests,
            llm_total_time=llm_total_time,
            cart_summary=self.cart_store.get_cart_summary(session_id),
        )

    def _request(self, messages: list[dict], config: TestConfig, test_case: str, iteration: int):
        """One model round-trip. Returns (reply, seconds spent waiting on the model)."""
        request = {
            "model": self.client.model,
            "messages": list(messages),
            "tools": TOOLS,
            "temperature": 0,
        }
        if config.max_tokens > 0:
            request["max_tokens"] = config.max_tokens

        start = time.perf_counter()
        try:
            reply = self.client.create_completion(
                messages, TOOLS, temperature=0.0, max_tokens=config.max_tokens,
            )
        except Exception as e:
            if self.logger:
                self.logger.log_error(test_case, self.client.model, iteration,
                                      self.client.endpoint_url, request, e)
            raise
        elapsed = time.perf_counter() - start

        # Some local servers omit tool call ids
        for tc in reply.tool_calls:
            if not tc.id:
                tc.id = generate_call_id()

        if self.logger:
            self.logger.log_request(test_case, self.client.model, iteration,
                                    self.client.endpoint_url, request, reply.to_dict())
        return reply, elapsed


def build_messages(session: ChatSession | None, user_message: str, system_prompt: str) -> list[dict]:
    """System prompt, prior user/assistant turns of the session, then the new user message."""
    messages = [{"role": "system", "content": system_prompt}]
    if session is not None:
        for msg in session.messages:
            if msg.role in ("user", "assistant"):
                messages.append({"role": msg.role, "content": msg.content})
    messages.append({"role": "user", "content": user_message})
    return messages


def generate_session_id() -> str:
    return f"session_{secrets.token_hex(16)}"


def _assistant_message(reply: ModelReply) -> dict:
    return {
        "role": "assistant",
        "content": reply.content,
        "tool_calls": [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.name, "arguments": tc.arguments},
            }
            for tc in reply.tool_calls
        ],
    }
