"""Payment gateway integration."""

from .client import GatewaySession, UPaymentsClient, map_provider_status, parse_webhook_payload
from .config import BillingConfig, GatewayConfig, load_billing_config, load_gateway_config
from .sandbox import LocalSandboxGateway

__all__ = [
    "BillingConfig",
    "GatewayConfig",
    "GatewaySession",
    "LocalSandboxGateway",
    "UPaymentsClient",
    "load_billing_config",
    "load_gateway_config",
    "map_provider_status",
    "parse_webhook_payload",
]
