"""
Order domain model.

Represents a requested swap and its tracked lifecycle. Orders are created
on submission (status pending), mutated only by the execution pipeline,
and never deleted.
"""

import math
import re
import secrets
import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from swap_engine.domain.quote import Venue
from swap_engine.exceptions import OrderValidationError

DEFAULT_SLIPPAGE = 0.05
TOKEN_PATTERN = re.compile(r"^[A-Z0-9]{2,10}$")

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
EXECUTION_REFERENCE_LENGTH = 88


class OrderStatus(str, Enum):
    """
    Order lifecycle status.

    Success path: PENDING -> ROUTING -> BUILDING -> SUBMITTED -> CONFIRMED.
    FAILED is reachable from any non-terminal state once attempts are
    exhausted. Terminal states: CONFIRMED, FAILED.
    """

    PENDING = "pending"
    ROUTING = "routing"
    BUILDING = "building"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if this is a terminal (final) state."""
        return self in (OrderStatus.CONFIRMED, OrderStatus.FAILED)


class BroadcastStatus(str, Enum):
    """Statuses that only ever appear on the broadcast channel."""

    CONNECTED = "connected"
    RETRYING = "retrying"


class Order(BaseModel):
    """
    A swap order.

    Serialized with camelCase aliases (tokenIn, executedPrice, ...) for the
    HTTP API and the file-backed store.
    """

    id: str
    token_in: str = Field(..., alias="tokenIn")
    token_out: str = Field(..., alias="tokenOut")
    amount: float = Field(..., gt=0)
    slippage: float = Field(default=DEFAULT_SLIPPAGE, ge=0, le=1)
    status: OrderStatus = OrderStatus.PENDING
    selected_dex: Venue | None = Field(default=None, alias="selectedDex")
    executed_price: float | None = Field(default=None, alias="executedPrice")
    tx_hash: str | None = Field(default=None, alias="txHash")
    error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="createdAt")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="updatedAt")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def check_distinct_assets(self) -> "Order":
        if self.token_in == self.token_out:
            raise ValueError("tokenIn and tokenOut must differ")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_api(self) -> dict[str, Any]:
        """JSON-ready dict using the public field names."""
        return self.model_dump(mode="json", by_alias=True)


class OrderUpdate(BaseModel):
    """
    Partial order update.

    Only fields that are not None are applied; everything else keeps its
    stored value.
    """

    status: OrderStatus | None = None
    selected_dex: Venue | None = None
    executed_price: float | None = None
    tx_hash: str | None = None
    error: str | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class OrderRequest(BaseModel):
    """A validated swap submission."""

    token_in: str
    token_out: str
    amount: float
    slippage: float = DEFAULT_SLIPPAGE

    def to_order(self, order_id: str | None = None) -> Order:
        """Create the pending order for this request."""
        now = datetime.now(UTC)
        return Order(
            id=order_id or generate_order_id(),
            token_in=self.token_in,
            token_out=self.token_out,
            amount=self.amount,
            slippage=self.slippage,
            status=OrderStatus.PENDING,
            created_at=now,
            updated_at=now,
        )


_EXAMPLE = {"tokenIn": "SOL", "tokenOut": "USDC", "amount": 10}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite(value: int | float) -> bool:
    """False for inf/nan and for integers too large to hold in a float."""
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def validate_order_request(payload: Any) -> OrderRequest:
    """
    Validate a raw submission body.

    Args:
        payload: Decoded JSON body

    Returns:
        OrderRequest with slippage defaulted

    Raises:
        OrderValidationError: describing the first rule that failed
    """
    if not isinstance(payload, dict):
        raise OrderValidationError(
            "INVALID_BODY",
            "Request body must be a JSON object",
            "ERR_000",
            example=_EXAMPLE,
        )

    token_in = payload.get("tokenIn")
    token_out = payload.get("tokenOut")
    amount = payload.get("amount")
    slippage = payload.get("slippage")

    if not token_in:
        raise OrderValidationError(
            "MISSING_TOKEN_IN",
            'tokenIn field is required (e.g., "SOL", "USDC")',
            "ERR_001",
            field="tokenIn",
            example=_EXAMPLE,
        )
    if not token_out:
        raise OrderValidationError(
            "MISSING_TOKEN_OUT",
            'tokenOut field is required (e.g., "SOL", "USDC")',
            "ERR_002",
            field="tokenOut",
            example=_EXAMPLE,
        )
    if amount is None:
        raise OrderValidationError(
            "MISSING_AMOUNT",
            "amount field is required and must be a positive number",
            "ERR_003",
            field="amount",
            example=_EXAMPLE,
        )
    if not _is_number(amount):
        raise OrderValidationError(
            "INVALID_AMOUNT_TYPE",
            "amount must be a number",
            "ERR_004",
            field="amount",
            receivedType=type(amount).__name__,
        )
    if not _is_finite(amount) or amount <= 0:
        raise OrderValidationError(
            "INVALID_AMOUNT",
            "Amount must be a finite number greater than 0",
            "ERR_005",
            field="amount",
            receivedValue=amount if _is_finite(amount) else str(amount),
        )

    if slippage is not None:
        if not _is_number(slippage):
            raise OrderValidationError(
                "INVALID_SLIPPAGE_TYPE",
                "slippage must be a number",
                "ERR_006",
                field="slippage",
                receivedType=type(slippage).__name__,
            )
        if not 0 <= slippage <= 1:
            raise OrderValidationError(
                "INVALID_SLIPPAGE_RANGE",
                "Slippage must be between 0 and 1 (e.g., 0.05 for 5%)",
                "ERR_007",
                field="slippage",
                receivedValue=slippage if _is_finite(slippage) else str(slippage),
                validRange={"min": 0, "max": 1},
            )

    if not isinstance(token_in, str) or not TOKEN_PATTERN.match(token_in):
        raise OrderValidationError(
            "INVALID_TOKEN_IN",
            "tokenIn must be a valid token symbol (2-10 uppercase letters/numbers)",
            "ERR_008",
            field="tokenIn",
            receivedValue=token_in,
            example="SOL",
        )
    if not isinstance(token_out, str) or not TOKEN_PATTERN.match(token_out):
        raise OrderValidationError(
            "INVALID_TOKEN_OUT",
            "tokenOut must be a valid token symbol (2-10 uppercase letters/numbers)",
            "ERR_009",
            field="tokenOut",
            receivedValue=token_out,
            example="USDC",
        )
    if token_in == token_out:
        raise OrderValidationError(
            "SAME_TOKEN_SWAP",
            "tokenIn and tokenOut cannot be the same",
            "ERR_010",
            receivedValues={"tokenIn": token_in, "tokenOut": token_out},
        )

    return OrderRequest(
        token_in=token_in,
        token_out=token_out,
        amount=float(amount),
        slippage=DEFAULT_SLIPPAGE if slippage is None else float(slippage),
    )


def generate_order_id() -> str:
    """
    Generate a unique order ID.

    Format: order_{epoch_ms}_{random12}
    Example: order_1717171717171_3f9a0c1b2d4e
    """
    return f"order_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


def _base58(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 58)
        digits.append(BASE58_ALPHABET[rem])
    return "".join(reversed(digits)) or BASE58_ALPHABET[0]


def generate_execution_reference() -> str:
    """
    Generate a unique execution (transaction) reference.

    A base58 nanosecond timestamp prefix followed by a random base58 suffix,
    padded to the 88 characters of a transaction signature.
    """
    prefix = _base58(time.time_ns())
    suffix = "".join(
        secrets.choice(BASE58_ALPHABET)
        for _ in range(EXECUTION_REFERENCE_LENGTH - len(prefix))
    )
    return prefix + suffix
