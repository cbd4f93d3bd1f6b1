"""CRM client capability and implementations."""

from clubsync_api.core.settings import Settings, settings as _default_settings

from .client import CrmClient
from .errors import CrmError, CrmNotFoundError, CrmPermanentError, CrmTransientError, is_retryable
from .http import HttpCrmClient
from .memory import InMemoryCrmClient


def build_crm_client(config: Settings | None = None) -> CrmClient:
    """Instantiate the CRM client selected by ``crm_provider``."""

    config = config or _default_settings
    if config.crm_provider == "http":
        return HttpCrmClient(
            base_url=config.crm_api_base_url,
            api_token=config.crm_api_token,
            tenant=config.crm_tenant,
            timeout=config.crm_timeout_seconds,
        )
    return InMemoryCrmClient()


__all__ = [
    "CrmClient",
    "CrmError",
    "CrmNotFoundError",
    "CrmPermanentError",
    "CrmTransientError",
    "HttpCrmClient",
    "InMemoryCrmClient",
    "build_crm_client",
    "is_retryable",
]
