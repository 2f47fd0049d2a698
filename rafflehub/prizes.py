"""Prize specification of a raffle, modelled as a small tagged union."""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Sequence

from .errors import ValidationError
from .validation import parse_amount

PRIZE_TYPES = ("cash", "item")


@dataclass(frozen=True)
class CashPrize:
    amount: Decimal

    def __post_init__(self) -> None:
        if self.amount is None or self.amount <= 0:
            raise ValidationError("Cash prize must be a positive number", field="cashPrize")


@dataclass(frozen=True)
class ItemPrize:
    name: str
    image: bytes
    image_type: str = "image/png"

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError(
                "Item name is required when item is selected", field="itemName"
            )
        if not self.image:
            raise ValidationError(
                "A prize image is required when item is selected", field="prizeImage"
            )


@dataclass(frozen=True)
class PrizeSpec:
    """One cash prize, one item prize, or both."""

    cash: Optional[CashPrize] = None
    item: Optional[ItemPrize] = None

    def __post_init__(self) -> None:
        if self.cash is None and self.item is None:
            raise ValidationError("At least one prize type is required", field="prizeTypes")

    @property
    def prize_types(self) -> list[str]:
        types = []
        if self.cash is not None:
            types.append("cash")
        if self.item is not None:
            types.append("item")
        return types


def parse_prize_types(raw: Any) -> list[str]:
    """Accept a JSON array string (multipart forms) or a list of strings."""
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError("Invalid prize types format", field="prizeTypes") from e
    if not isinstance(value, (list, tuple)) or not value:
        raise ValidationError("Invalid prize types format", field="prizeTypes")
    if not all(isinstance(t, str) and t in PRIZE_TYPES for t in value):
        raise ValidationError('Prize types must be "cash" or "item"', field="prizeTypes")
    # de-duplicate, keep order
    return list(dict.fromkeys(value))


def parse_prize_spec(
    prize_types: Any,
    *,
    cash_prize: Any = None,
    item_name: Any = None,
    image: Optional[bytes] = None,
    image_type: Optional[str] = None,
) -> PrizeSpec:
    """Validate raw form fields and build the matching :class:`PrizeSpec`.

    Fields belonging to a prize type that was not selected are ignored.
    """
    types: Sequence[str] = parse_prize_types(prize_types)

    cash = None
    if "cash" in types:
        amount = parse_amount(
            cash_prize,
            "cashPrize",
            allow_zero=False,
            message="Cash prize must be a positive number",
        )
        cash = CashPrize(amount=amount)

    item = None
    if "item" in types:
        name = item_name.strip() if isinstance(item_name, str) else ""
        item = ItemPrize(name=name, image=image or b"", image_type=image_type or "image/png")

    return PrizeSpec(cash=cash, item=item)
