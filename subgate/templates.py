"""Message templates — placeholder substitution and order summaries.

Pure functions, no I/O. Placeholders are literal, case-sensitive tokens:

    {name}     subscriber display name (or empty)
    {phone}    normalized subscriber number
    {endDate}  subscription end date as YYYY-MM-DD (or empty)
    {order}    order summary supplied by the webhook (or empty)

Every occurrence is replaced in a single left-to-right pass, so a
substituted value is never expanded again. Unknown tokens stay as-is.
"""

import re
from dataclasses import dataclass, field
from datetime import timezone
from typing import Optional

from .entitlements.models import EntitlementRecord

TOKENS = ("{name}", "{phone}", "{endDate}", "{order}")

_TOKEN_RE = re.compile("|".join(re.escape(t) for t in TOKENS))


def _substitutions(record: EntitlementRecord, context: dict) -> dict[str, str]:
    ends_at = record.ends_at
    if ends_at is not None and ends_at.tzinfo is not None:
        ends_at = ends_at.astimezone(timezone.utc)
    return {
        "{name}": record.display_name or "",
        "{phone}": record.identity,
        "{endDate}": ends_at.strftime("%Y-%m-%d") if ends_at else "",
        "{order}": str(context.get("order") or ""),
    }


def render(
    template: Optional[str],
    record: EntitlementRecord,
    context: Optional[dict] = None,
    default_template: str = "",
) -> str:
    """Render a subscriber template.

    Args:
        template: Template text; empty/None falls back to ``default_template``
        record: Subscriber the message is about
        context: Optional extras (``order``)
        default_template: Fallback supplied by configuration

    Returns:
        Rendered text, stripped of surrounding whitespace
    """
    if not template or not template.strip():
        template = default_template or ""
    values = _substitutions(record, context or {})
    return _TOKEN_RE.sub(lambda m: values[m.group(0)], template).strip()


# ============================================================
# ORDER SUMMARY ({order})
# ============================================================

@dataclass
class OrderItem:
    name: str
    qty: float = 1
    price: float = 0

    @property
    def line_total(self) -> float:
        return self.qty * self.price


@dataclass
class OrderContext:
    """Order details from the e-commerce webhook."""
    order_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    items: list[OrderItem] = field(default_factory=list)
    total: Optional[float] = None


@dataclass(frozen=True)
class OrderLabels:
    order_id: str = "Order"
    customer: str = "Customer"
    items: str = "Items"
    total: str = "Total"


def _fmt_number(value: float) -> str:
    """50.0 → '50', 12.5 → '12.5'."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def build_order_summary(order: OrderContext, labels: OrderLabels = OrderLabels()) -> str:
    """Multi-line order summary used for the {order} placeholder."""
    lines = [f"{labels.order_id}: {order.order_id or '-'}"]
    if order.customer_name:
        lines.append(f"{labels.customer}: {order.customer_name}")
    if order.items:
        lines.append(f"{labels.items}:")
        for item in order.items:
            lines.append(f"- {item.name} x{_fmt_number(item.qty)} = {_fmt_number(item.line_total)}")
    if order.total:
        lines.append(f"{labels.total}: {_fmt_number(order.total)}")
    return "\n".join(lines)
