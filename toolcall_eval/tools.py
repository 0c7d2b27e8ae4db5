import json
from typing import Any, Callable

from .cart import CartStore
from .models import Product, ToolCallResult


PRODUCTS = [
    Product("iPhone 15", "electronics", 999.99, "Latest Apple smartphone with advanced features"),
    Product("Samsung Galaxy S24", "electronics", 899.99, "Premium Android smartphone with excellent camera"),
    Product("Wireless Headphones", "electronics", 199.99, "High-quality wireless headphones with noise cancellation"),
    Product("MacBook Pro", "electronics", 1999.99, "Professional laptop for developers and creators"),
    Product("Running Shoes", "clothing", 129.99, "Comfortable running shoes for daily exercise"),
    Product("Winter Jacket", "clothing", 89.99, "Warm winter jacket for cold weather"),
    Product("Coffee Maker", "home", 79.99, "Automatic coffee maker for perfect morning brew"),
    Product("Vacuum Cleaner", "home", 149.99, "Powerful vacuum cleaner for home cleaning"),
    Product("Programming Book", "books", 49.99, "Learn programming with this comprehensive guide"),
    Product("Cookbook", "books", 29.99, "Delicious recipes for home cooking"),
    Product("Tennis Racket", "sports", 159.99, "Professional tennis racket for competitive play"),
    Product("Yoga Mat", "sports", 39.99, "Non-slip yoga mat for comfortable practice"),
    Product("Face Cream", "beauty", 24.99, "Moisturizing face cream for healthy skin"),
    Product("Shampoo", "beauty", 12.99, "Gentle shampoo for all hair types"),
    Product("Board Game", "toys", 34.99, "Fun board game for family entertainment"),
    Product("Action Figure", "toys", 19.99, "Collectible action figure for kids and collectors"),
    Product("Organic Pasta", "food", 4.99, "Organic whole wheat pasta for healthy meals"),
    Product("Green Tea", "food", 8.99, "Premium green tea with antioxidants"),
]

DEFAULT_PRICE = 99.99
DEFAULT_SEARCH_LIMIT = 10

_PRICES = {p.name: p.price for p in PRODUCTS}


def get_product_price(product_name: str) -> float:
    """Mock price for a product; unknown products get DEFAULT_PRICE."""
    return _PRICES.get(product_name, DEFAULT_PRICE)


def search_products(query: str = "", category: str = "", limit: int = DEFAULT_SEARCH_LIMIT) -> list[Product]:
    """Search for products by query and/or category, in catalog order."""
    if limit <= 0:
        limit = DEFAULT_SEARCH_LIMIT
    query_lower = query.lower()

    results = []
    for product in PRODUCTS:
        # Category must match exactly when given
        if category and category.lower() != product.category.lower():
            continue

        if query:
            name_match = query_lower in product.name.lower()
            description_match = query_lower in product.description.lower()
            if not (name_match or description_match):
                continue

        results.append(product)
        if len(results) >= limit:
            break

    return results


TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "search_products",
            "description": "Search for products by query, category, or price range",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query for product name or description"},
                    "category": {
                        "type": "string",
                        "description": "Product category (electronics, clothing, books, home, sports, beauty, toys, food)",
                    },
                    "limit": {"type": "integer", "description": "Maximum number of results to return (default: 10)"},
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "add_to_cart",
            "description": "Add a product to the shopping cart",
            "parameters": {
                "type": "object",
                "properties": {
                    "product_name": {"type": "string", "description": "The name of the product to add"},
                    "quantity": {"type": "integer", "description": "Quantity to add (default: 1)"},
                },
                "required": ["product_name"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "remove_from_cart",
            "description": "Remove a product from the shopping cart",
            "parameters": {
                "type": "object",
                "properties": {
                    "product_name": {"type": "string", "description": "The name of the product to remove"},
                },
                "required": ["product_name"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "view_cart",
            "description": "View the current contents of the shopping cart",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "checkout",
            "description": "Process checkout for the current cart",
            "parameters": {"type": "object", "properties": {}},
        },
    },
]


class InvalidArguments(ValueError):
    """Tool arguments could not be decoded into the handler's parameters."""


def _string_arg(args: dict, key: str) -> str:
    value = args.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidArguments(key)
    return value


def _int_arg(args: dict, key: str) -> int:
    value = args.get(key)
    if value is None:
        return 0
    # bool is an int subclass; reject it along with non-integral floats
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArguments(key)
    if isinstance(value, float) and not value.is_integer():
        raise InvalidArguments(key)
    return int(value)


class ToolExecutor:
    """Dispatches tool calls by name to handlers that act on the catalog and cart store."""

    def __init__(self, cart_store: CartStore):
        self.cart_store = cart_store
        self.handlers: dict[str, Callable[[dict, str], Any]] = {
            "search_products": self._search_products,
            "add_to_cart": self._add_to_cart,
            "remove_from_cart": self._remove_from_cart,
            "view_cart": self._view_cart,
            "checkout": self._checkout,
        }

    def execute(self, call_id: str, tool_name: str, arguments: str, session_id: str) -> ToolCallResult:
        """Execute a tool and return the result. Never raises for bad input."""
        handler = self.handlers.get(tool_name)
        if handler is None:
            return ToolCallResult(
                call_id=call_id,
                tool_name=tool_name,
                success=False,
                arguments=arguments,
                error=f"Unknown tool: {tool_name}",
            )

        try:
            args = json.loads(arguments) if arguments.strip() else {}
            if not isinstance(args, dict):
                raise InvalidArguments("arguments must be an object")
            result = handler(args, session_id)
        except (json.JSONDecodeError, InvalidArguments):
            return ToolCallResult(
                call_id=call_id,
                tool_name=tool_name,
                success=False,
                arguments=arguments,
                error="Invalid arguments",
            )

        return ToolCallResult(
            call_id=call_id,
            tool_name=tool_name,
            success=True,
            arguments=arguments,
            result=result,
        )

    def _search_products(self, args: dict, session_id: str):
        return search_products(
            query=_string_arg(args, "query"),
            category=_string_arg(args, "category"),
            limit=_int_arg(args, "limit"),
        )

    def _add_to_cart(self, args: dict, session_id: str):
        quantity = _int_arg(args, "quantity") or 1
        return self.cart_store.add_to_cart(session_id, _string_arg(args, "product_name"), quantity)

    def _remove_from_cart(self, args: dict, session_id: str):
        return self.cart_store.remove_from_cart(session_id, _string_arg(args, "product_name"))

    def _view_cart(self, args: dict, session_id: str):
        return self.cart_store.get_cart_summary(session_id)

    def _checkout(self, args: dict, session_id: str):
        return self.cart_store.checkout(session_id)


def tool_result_content(result: ToolCallResult) -> str:
    """JSON payload sent back to the model for one executed tool call."""
    if not result.success:
        return json.dumps({"error": result.error})
    return json.dumps(result.to_dict()["result"])
