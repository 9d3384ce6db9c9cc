import logging
import time
from typing import List, Optional

import httpx

from errors import NotificationError
from models import DeploymentRecord, DeploymentResult, NotificationMessage, TicketReference
from observability import elapsed_ms, log_event, outbound_headers
from redaction import redact_text, redact_url


DEFAULT_TIMEOUT_SECONDS = 3.0
JIRA_ISSUE_TYPE = "Task"

_RESULT_EMOJI = {
    DeploymentResult.SUCCEEDED: ":white_check_mark:",
    DeploymentResult.FAILED: ":x:",
    DeploymentResult.CANCELLED: ":no_entry_sign:",
}

logger = logging.getLogger("shipit.notify")


def build_deployment_message(record: DeploymentRecord, ticket: Optional[TicketReference] = None) -> NotificationMessage:
    emoji = _RESULT_EMOJI.get(record.result, ":rocket:")
    lines = [f"{emoji} *{record.team}* deployed *{record.service}* (build `{record.buildId}`)"]
    if record.result:
        lines.append(f"Result: {record.result.value}")
    if record.note:
        lines.append(f"> {record.note}")
    for link in record.links:
        lines.append(f"<{link.url}|{link.title}>")
    if ticket:
        lines.append(f"Change ticket: <{ticket.browseUrl}|{ticket.externalId}>")
    return NotificationMessage(text="\n".join(lines))


def build_deletion_message(record: DeploymentRecord, deleted_by: str) -> NotificationMessage:
    return NotificationMessage(
        text=(
            f":wastebasket: Deployment of *{record.service}* (build `{record.buildId}`) "
            f"by *{record.team}* was deleted by {deleted_by}"
        )
    )


def build_ticket_fields(record: DeploymentRecord, project_key: str) -> dict:
    description = [
        f"Team: {record.team}",
        f"Service: {record.service}",
        f"Build: {record.buildId}",
        f"Deployed at: {record.timestamp}",
    ]
    if record.result:
        description.append(f"Result: {record.result.value}")
    if record.note:
        description.extend(["", record.note])
    if record.links:
        description.append("")
        description.extend(f"[{link.title}|{link.url}]" for link in record.links)
    fields = {
        "project": {"key": project_key},
        "issuetype": {"name": JIRA_ISSUE_TYPE},
        "summary": f"Deployment of {record.service} build {record.buildId}",
        "description": "\n".join(description),
        "labels": ["shipit", f"team-{record.team}".replace(" ", "-").lower()],
    }
    if record.jiraComponent:
        fields["components"] = [{"name": record.jiraComponent}]
    return fields


class NotificationHub:
    """Best-effort Slack and Jira calls. One attempt each.

    httpx bounds each phase of a call (connect, write, read) separately, so a
    single event also gets an overall budget of ``timeout_seconds``: each call
    may only use what earlier calls for the same event left over, and a channel
    whose turn comes after the budget is spent is skipped with a warning.
    """

    def __init__(
        self,
        slack_webhook_url: str,
        jira_issue_api_url: str,
        jira_browse_tickets_url: str,
        jira_username: str,
        jira_password: str,
        jira_project_key: str = "REL",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.slack_webhook_url = slack_webhook_url
        self.jira_issue_api_url = jira_issue_api_url
        self.jira_browse_tickets_url = jira_browse_tickets_url
        self.jira_project_key = jira_project_key
        self.timeout_seconds = timeout_seconds
        self._jira_auth = httpx.BasicAuth(jira_username, jira_password)
        self._client = httpx.Client(timeout=httpx.Timeout(timeout_seconds), transport=transport)

    def close(self) -> None:
        self._client.close()

    def _post(
        self,
        channel: str,
        url: str,
        payload: dict,
        auth: Optional[httpx.Auth] = None,
        deadline: Optional[float] = None,
    ) -> httpx.Response:
        timeout = httpx.USE_CLIENT_DEFAULT
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise NotificationError(channel, "skipped, notification time budget exhausted")
            timeout = httpx.Timeout(min(remaining, self.timeout_seconds))
        headers = outbound_headers(Accept="application/json")
        start = time.monotonic()
        try:
            response = self._client.post(url, json=payload, headers=headers, auth=auth, timeout=timeout)
        except httpx.HTTPError as exc:
            raise NotificationError(channel, redact_text(f"request to {redact_url(url)} failed: {exc}")) from exc
        latency_ms = elapsed_ms(start)
        logger.info(
            "notify.request channel=%s url=%s status=%s latency_ms=%.1f",
            channel,
            redact_url(url),
            response.status_code,
            latency_ms,
        )
        if response.status_code >= 400:
            raise NotificationError(channel, f"HTTP {response.status_code} from {redact_url(url)}")
        return response

    def notify_slack(self, message: NotificationMessage, deadline: Optional[float] = None) -> None:
        self._post("slack", self.slack_webhook_url, {"text": message.text}, deadline=deadline)

    def notify_jira(self, ticket_fields: dict, deadline: Optional[float] = None) -> TicketReference:
        response = self._post(
            "jira",
            self.jira_issue_api_url,
            {"fields": ticket_fields},
            auth=self._jira_auth,
            deadline=deadline,
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise NotificationError("jira", "issue API returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise NotificationError("jira", "issue API returned an unexpected body")
        key = payload.get("key")
        if not key or not isinstance(key, str):
            raise NotificationError("jira", "issue API response is missing the issue key")
        return TicketReference(
            externalId=key,
            browseUrl=f"{self.jira_browse_tickets_url.rstrip('/')}/{key}",
        )

    def announce_deployment(self, record: DeploymentRecord) -> List[str]:
        warnings: List[str] = []
        ticket = None
        deadline = time.monotonic() + self.timeout_seconds
        if record.jiraComponent:
            try:
                ticket = self.notify_jira(build_ticket_fields(record, self.jira_project_key), deadline)
            except NotificationError as exc:
                warnings.append(self._warn(exc, record.id))
        try:
            self.notify_slack(build_deployment_message(record, ticket), deadline)
        except NotificationError as exc:
            warnings.append(self._warn(exc, record.id))
        log_event(
            "deployment_announced",
            deployment_id=record.id,
            service_name=record.service,
            ticket=ticket.externalId if ticket else None,
            warnings=len(warnings),
        )
        return warnings

    def announce_deletion(self, record: DeploymentRecord, deleted_by: str) -> List[str]:
        try:
            self.notify_slack(build_deletion_message(record, deleted_by), time.monotonic() + self.timeout_seconds)
        except NotificationError as exc:
            return [self._warn(exc, record.id)]
        return []

    @staticmethod
    def _warn(exc: NotificationError, deployment_id: str) -> str:
        log_event(
            "notification_failed",
            level=logging.WARNING,
            channel=exc.channel,
            deployment_id=deployment_id,
            error=exc.message,
        )
        return f"{exc.channel} notification failed: {exc.message}"
