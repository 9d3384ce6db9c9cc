import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from config import Settings
from notifications import NotificationHub
from policy import AdminPolicy
from search import SearchClient, SigningSearchClientFactory


logger = logging.getLogger("shipit.api")


@dataclass(frozen=True)
class GatewayContext:
    """Everything deployment operations are allowed to touch."""

    search: SearchClient
    notifications: NotificationHub
    admin_policy: AdminPolicy

    def is_admin(self, identity) -> bool:
        return self.admin_policy.is_admin(identity)

    def close(self) -> None:
        self.notifications.close()
        self.search.close()


def build_context(
    settings: Settings,
    credential_resolver=None,
    search_transport: Optional[httpx.BaseTransport] = None,
    notify_transport: Optional[httpx.BaseTransport] = None,
) -> GatewayContext:
    search = SigningSearchClientFactory(
        settings.es_endpoint_url,
        settings.aws_region,
        profile_name=settings.aws_profile,
        timeout_seconds=settings.es_timeout_seconds,
        credential_resolver=credential_resolver,
        transport=search_transport,
    ).build()
    try:
        notifications = NotificationHub(
            slack_webhook_url=settings.slack_webhook_url,
            jira_issue_api_url=settings.jira_issue_api_url,
            jira_browse_tickets_url=settings.jira_browse_tickets_url,
            jira_username=settings.jira_username,
            jira_password=settings.jira_password,
            jira_project_key=settings.jira_project_key,
            timeout_seconds=settings.notification_timeout_seconds,
            transport=notify_transport,
        )
        admin_policy = AdminPolicy(settings.admin_email_addresses)
    except Exception:
        search.close()
        raise
    logger.info(
        "context.built index=%s admins=%s",
        settings.es_index_name,
        len(admin_policy.allow_list),
    )
    return GatewayContext(search=search, notifications=notifications, admin_policy=admin_policy)
