"""Subscription filter evaluation.

A pure predicate over event data. Each filter dimension reads one field of
the business payload; when the entity carrying that field is absent from
the event, the dimension does not constrain it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

    from vasa.webhooks.models import SubscriptionFilters

__all__ = [
    "get_path",
    "matches_filters",
]

_MISSING = object()


def get_path(data: Mapping[str, Any], *paths: str) -> Any:
    """Return the first value found at any of the dotted ``paths``.

    Example:
        >>> get_path({"order": {"pricing": {"total": 10}}}, "order.total", "order.pricing.total")
        10
    """
    for path in paths:
        current: Any = data
        for key in path.split("."):
            if not isinstance(current, dict) or key not in current:
                current = _MISSING
                break
            current = current[key]
        if current is not _MISSING and current is not None:
            return current
    return None


def _member(value: Any, allowed: list[str]) -> bool:
    return value is not None and str(value) in allowed


def matches_filters(filters: SubscriptionFilters, event_data: Mapping[str, Any]) -> bool:
    """Evaluate a subscription's filters against one event.

    Args:
        filters: Subscription filter record (empty fields mean no constraint)
        event_data: Business payload as emitted

    Returns:
        True if the event passes every configured dimension
    """
    order = event_data.get("order")
    payment = event_data.get("payment")
    product = event_data.get("product")

    if filters.order_statuses and order:
        if not _member(get_path(event_data, "order.status"), filters.order_statuses):
            return False

    if filters.payment_types and payment:
        if not _member(get_path(event_data, "payment.type"), filters.payment_types):
            return False

    if filters.min_order_value and order:
        total = get_path(event_data, "order.total", "order.pricing.total")
        try:
            if total is None or float(total) < filters.min_order_value:
                return False
        except (TypeError, ValueError):
            return False

    if filters.countries and order:
        country = get_path(
            event_data,
            "order.shippingCountry",
            "order.shipping.shippingAddress.country",
        )
        if not _member(country, filters.countries):
            return False

    if filters.product_categories and (product or order):
        category = get_path(event_data, "product.category", "order.product.category")
        if product or category is not None:
            if not _member(category, filters.product_categories):
                return False

    return True
