import copy
import threading
import time
import uuid
from datetime import datetime
from typing import Callable

from .models import CartItem, CartSummary, CheckoutResult, InitialCartState


class CartStore:
    """Shopping carts keyed by session id.

    Carts are created lazily on first access and cleared on checkout. Every
    public method takes the store lock and returns a snapshot copy, so the
    stored carts are only ever mutated from inside this class.
    """

    def __init__(self, price_lookup: Callable[[str], float]):
        self._price_lookup = price_lookup
        self._carts: dict[str, CartSummary] = {}
        self._lock = threading.Lock()

    def add_to_cart(self, session_id: str, product_name: str, quantity: int = 1) -> CartSummary:
        """Add product to cart, merging with an existing line of the same name."""
        if quantity <= 0:
            quantity = 1

        with self._lock:
            cart = self._get_or_create(session_id)

            for item in cart.items:
                if item.product_name == product_name:
                    item.quantity += quantity
                    item.subtotal = item.quantity * item.price
                    break
            else:
                price = self._price_lookup(product_name)
                cart.items.append(CartItem(
                    product_name=product_name,
                    quantity=quantity,
                    price=price,
                    subtotal=quantity * price,
                ))

            self._update_totals(cart)
            return copy.deepcopy(cart)

    def remove_from_cart(self, session_id: str, product_name: str) -> CartSummary:
        """Remove the first line matching product_name. Absent products are a no-op."""
        with self._lock:
            cart = self._get_or_create(session_id)

            for i, item in enumerate(cart.items):
                if item.product_name == product_name:
                    del cart.items[i]
                    break

            self._update_totals(cart)
            return copy.deepcopy(cart)

    def get_cart_summary(self, session_id: str) -> CartSummary:
        with self._lock:
            return copy.deepcopy(self._get_or_create(session_id))

    def checkout(self, session_id: str) -> CheckoutResult:
        """Process checkout and empty the cart."""
        with self._lock:
            cart = self._get_or_create(session_id)
            total = cart.total
            order_id = f"ORD-{int(time.time())}-{uuid.uuid4().hex[:8]}"

            cart.items = []
            cart.total = 0.0
            cart.item_count = 0
            cart.updated_at = datetime.now()

        return CheckoutResult(
            success=True,
            order_id=order_id,
            total=total,
            message="Order processed successfully",
        )

    def initialize_cart_state(self, session_id: str, initial_state: InitialCartState | None) -> CartSummary | None:
        """Replace the session's cart with a predefined state."""
        if initial_state is None:
            return None

        cart = CartSummary(session_id=session_id)
        for initial_item in initial_state.items:
            if initial_item.quantity <= 0:
                continue
            price = self._price_lookup(initial_item.product_name)
            cart.items.append(CartItem(
                product_name=initial_item.product_name,
                quantity=initial_item.quantity,
                price=price,
                subtotal=initial_item.quantity * price,
            ))
        self._update_totals(cart)

        with self._lock:
            self._carts[session_id] = cart
            return copy.deepcopy(cart)

    def _get_or_create(self, session_id: str) -> CartSummary:
        # Caller must hold self._lock.
        cart = self._carts.get(session_id)
        if cart is None:
            cart = CartSummary(session_id=session_id)
            self._carts[session_id] = cart
        return cart

    @staticmethod
    def _update_totals(cart: CartSummary):
        cart.total = sum(item.subtotal for item in cart.items)
        cart.item_count = sum(item.quantity for item in cart.items)
        cart.updated_at = datetime.now()
