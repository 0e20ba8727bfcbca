"""
Notification message templates rendered with Jinja2.

Each template key is ``<event>.<audience>`` and holds a title and a message
template. Templates are kept in memory; the context is built from the
transition outcome.
"""

from decimal import Decimal
from typing import Any, Optional

from jinja2 import DictLoader, Environment, StrictUndefined, TemplateError

from orderflow.core.logging import get_logger

logger = get_logger(__name__)


class TemplateEngineError(Exception):
    """Base exception for template engine errors."""

    def __init__(self, message: str, template_name: Optional[str] = None):
        super().__init__(message)
        self.template_name = template_name


class TemplateNotFoundError(TemplateEngineError):
    """Raised when no template exists for a key."""


class TemplateRenderError(TemplateEngineError):
    """Raised when template rendering fails."""


NOTIFICATION_TEMPLATES: dict[str, tuple[str, str]] = {
    "order_created.creator": (
        "Order Created",
        "Your order {{ order_number }} for {{ customer_name }} "
        "({{ total | currency }}) has been created and is pending approval.",
    ),
    "order_created.accountant": (
        "New Order Pending Approval",
        "{{ actor_name }} created order {{ order_number }} for "
        "{{ customer_name }} ({{ total | currency }}). Please review it.",
    ),
    "approved.creator": (
        "Order Approved",
        "Your order {{ order_number }} has been approved by {{ actor_name }}.",
    ),
    "approved.warehouse": (
        "Order Ready for Warehouse",
        "Order {{ order_number }} has been approved and is waiting for "
        "warehouse confirmation.",
    ),
    "rejected.creator": (
        "Order Rejected",
        "Your order {{ order_number }} has been rejected. Reason: {{ reason }}",
    ),
    "edit_requested.creator": (
        "Changes Requested",
        "{{ actor_name }} requested changes to order {{ order_number }}. "
        "Reason: {{ reason }}",
    ),
    "order_resubmitted.creator": (
        "Order Resubmitted",
        "Your order {{ order_number }} has been resubmitted for approval.",
    ),
    "order_resubmitted.accountant": (
        "Order Resubmitted for Approval",
        "Order {{ order_number }} for {{ customer_name }} "
        "({{ total | currency }}) has been resubmitted. Please review it.",
    ),
    "cancelled.creator": (
        "Order Cancelled",
        "Order {{ order_number }} has been cancelled by {{ actor_name }}."
        "{% if reason %} Reason: {{ reason }}{% endif %}",
    ),
    "cancelled.admin": (
        "Order Cancelled",
        "Order {{ order_number }} was cancelled by {{ actor_name }}."
        "{% if reason %} Reason: {{ reason }}{% endif %}",
    ),
    "warehouse_confirmed.creator": (
        "Warehouse Confirmed",
        "The warehouse has confirmed order {{ order_number }}.",
    ),
    "warehouse_confirmed.shipper": (
        "Order Ready to Ship",
        "Order {{ order_number }} has been confirmed by the warehouse and is "
        "ready to ship.",
    ),
    "warehouse_rejected.creator": (
        "Warehouse Rejected Order",
        "The warehouse rejected order {{ order_number }}. Reason: {{ reason }}",
    ),
    "warehouse_rejected.approver": (
        "Warehouse Rejected Order",
        "Order {{ order_number }} that you approved was rejected by the "
        "warehouse. Reason: {{ reason }}",
    ),
    "shipped.creator": (
        "Order Shipped",
        "Your order {{ order_number }} has been shipped."
        "{% if tracking_number %} Tracking number: {{ tracking_number }}{% endif %}",
    ),
    "completed.creator": (
        "Order Completed",
        "Order {{ order_number }} has been delivered.",
    ),
    "completed.admin": (
        "Order Completed",
        "Order {{ order_number }} ({{ total | currency }}) has been delivered.",
    ),
    "partial_complete.creator": (
        "Order Partially Delivered",
        "Order {{ order_number }} has been partially delivered."
        "{% if notes %} Notes: {{ notes }}{% endif %}",
    ),
    "partial_complete.admin": (
        "Order Partially Delivered",
        "Order {{ order_number }} has been partially delivered."
        "{% if notes %} Notes: {{ notes }}{% endif %}",
    ),
    "failed.creator": (
        "Delivery Failed",
        "Delivery of order {{ order_number }} failed. Reason: {{ reason }}",
    ),
    "failed.confirmer": (
        "Delivery Failed",
        "Delivery of order {{ order_number }} that you confirmed failed. "
        "Reason: {{ reason }}",
    ),
    "order_amended.creator": (
        "Delivered Quantities Updated",
        "{{ actor_name }} updated the delivered quantities of order "
        "{{ order_number }}."
        "{% if actual_total is not none %} Actual total: "
        "{{ actual_total | currency }}{% endif %}",
    ),
}


def format_currency(value: Any) -> str:
    """Format a number as currency."""
    if value is None:
        return ""
    return f"${Decimal(str(value)):,.2f}"


class TemplateEngine:
    """Renders notification titles and messages."""

    def __init__(self, templates: Optional[dict[str, tuple[str, str]]] = None):
        templates = templates or NOTIFICATION_TEMPLATES
        self._keys = frozenset(templates)

        mapping: dict[str, str] = {}
        for key, (title, message) in templates.items():
            mapping[f"{key}.title"] = title
            mapping[f"{key}.message"] = message

        self.env = Environment(
            loader=DictLoader(mapping),
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["currency"] = format_currency

    def has_template(self, key: str) -> bool:
        return key in self._keys

    def render(self, key: str, context: dict[str, Any]) -> tuple[str, str]:
        """
        Render the title and message for ``key``.

        Raises:
            TemplateNotFoundError: If no template is registered for the key
            TemplateRenderError: If rendering fails
        """
        if key not in self._keys:
            raise TemplateNotFoundError(
                f"Notification template not found: {key}", template_name=key
            )
        try:
            title = self.env.get_template(f"{key}.title").render(**context).strip()
            message = self.env.get_template(f"{key}.message").render(**context).strip()
        except TemplateError as e:
            logger.error(
                "Notification template rendering failed",
                template_name=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TemplateRenderError(
                f"Failed to render notification template: {e}", template_name=key
            ) from e
        return title, message
