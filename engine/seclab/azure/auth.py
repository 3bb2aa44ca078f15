"""Azure authentication — credential, SDK client factory, subscription selection."""

from __future__ import annotations

from typing import Any, Optional

from azure.core.exceptions import ClientAuthenticationError, HttpResponseError
from azure.identity import DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.resource import ResourceManagementClient, SubscriptionClient

from ..common import (
    die,
    log,
    print_header,
    print_step,
    print_success,
    print_warning,
    prompt_selection,
)
from ..errors import SeclabError

# ---------------------------------------------------------------------------
# SDK client factory
# ---------------------------------------------------------------------------


class AzureClients:
    """Lazily-initialised container for the Azure management clients."""

    def __init__(
        self,
        subscription_id: str = "",
        tenant_id: str = "",
        credential: Optional[Any] = None,
    ):
        self.subscription_id = subscription_id
        self.tenant_id = tenant_id
        self._credential = credential
        self._subscriptions: Optional[SubscriptionClient] = None
        self._resource: Optional[ResourceManagementClient] = None
        self._compute: Optional[ComputeManagementClient] = None

    @property
    def credential(self) -> Any:
        if self._credential is None:
            kwargs: dict[str, Any] = {}
            if self.tenant_id:
                kwargs["additionally_allowed_tenants"] = [self.tenant_id]
                kwargs["interactive_browser_tenant_id"] = self.tenant_id
            self._credential = DefaultAzureCredential(**kwargs)
        return self._credential

    @property
    def subscriptions(self) -> SubscriptionClient:
        if self._subscriptions is None:
            self._subscriptions = SubscriptionClient(self.credential)
        return self._subscriptions

    @property
    def resource(self) -> ResourceManagementClient:
        if self._resource is None:
            self._resource = ResourceManagementClient(self.credential, self._require_subscription())
        return self._resource

    @property
    def compute(self) -> ComputeManagementClient:
        if self._compute is None:
            self._compute = ComputeManagementClient(self.credential, self._require_subscription())
        return self._compute

    def use_subscription(self, subscription_id: str) -> None:
        """Switch subscription; subscription-bound clients are rebuilt on next use."""
        if subscription_id != self.subscription_id:
            self.subscription_id = subscription_id
            self._resource = None
            self._compute = None

    def _require_subscription(self) -> str:
        if not self.subscription_id:
            raise SeclabError(
                "No subscription selected — set SECLAB_SUBSCRIPTION_ID or pass --subscription"
            )
        return self.subscription_id


# ---------------------------------------------------------------------------
# Login check / subscription selection
# ---------------------------------------------------------------------------


def list_subscriptions(clients: AzureClients) -> list[Any]:
    """Enabled subscriptions visible to the current credential."""
    return [
        s for s in clients.subscriptions.subscriptions.list()
        if str(getattr(s, "state", "Enabled")).lower().endswith("enabled")
    ]


def verify_login(clients: AzureClients, non_interactive: bool = False) -> str:
    """Confirm the credential works and settle on a subscription. Returns its id."""
    print_header("Azure Login & Subscription")
    print_step("Checking Azure credentials...")
    try:
        subs = list_subscriptions(clients)
    except ClientAuthenticationError as exc:
        die(f"Azure authentication failed — run 'az login' first ({exc.message})")
        return ""
    except HttpResponseError as exc:
        die(f"Could not list subscriptions: {exc.message}")
        return ""

    if not subs:
        die("The signed-in identity has no enabled subscriptions.")

    by_id = {s.subscription_id: s for s in subs}
    if clients.subscription_id:
        sub = by_id.get(clients.subscription_id)
        if sub is None:
            die(f"Subscription {clients.subscription_id} not found or not enabled.")
    elif len(subs) == 1:
        sub = subs[0]
    elif non_interactive:
        die("Several subscriptions available — pass --subscription in non-interactive mode.")
        return ""
    else:
        print_warning("Several subscriptions available.")
        idx = prompt_selection(
            [f"{s.display_name} ({s.subscription_id})" for s in subs],
            "Select subscription",
        )
        sub = subs[idx]

    clients.use_subscription(sub.subscription_id)
    if not clients.tenant_id:
        clients.tenant_id = getattr(sub, "tenant_id", "") or ""
    print_success(f"Subscription: {sub.display_name} ({sub.subscription_id})")
    log(f"Using subscription={sub.subscription_id}, tenant={clients.tenant_id}")
    return sub.subscription_id
