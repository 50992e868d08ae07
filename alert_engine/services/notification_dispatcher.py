"""
Notification Dispatcher

Boundary between the engine and channel adapters (Slack, Teams, PagerDuty,
generic webhooks, ...). The engine only cares whether a dispatch succeeded
and, optionally, the provider message id for threading replies.
"""
import logging
import time
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from alert_engine.config import get_settings
from alert_engine.exceptions import DispatchError
from alert_engine.metrics import NOTIFICATIONS_DISPATCHED, DISPATCH_DURATION
from alert_engine.models import NotificationLog
from alert_engine.schemas import DispatchAction, DispatchResult

logger = logging.getLogger(__name__)


def render_text(action: DispatchAction) -> str:
    """Plain-text notification body, with mention prefix when requested."""
    prefix = ""
    if action.mention_channel:
        prefix = "@channel "
    elif action.mention_here:
        prefix = "@here "

    label = "ESCALATION" if action.kind == "escalation" else action.severity.value.upper()
    where = "/".join(p for p in (action.project, action.environment) if p)
    text = f"{prefix}[{label}] {action.title}"
    if where:
        text += f" ({where})"
    if action.count > 1:
        text += f" x{action.count}"
    if action.kind == "escalation":
        text += f" - unacknowledged, escalation level {action.escalation_level + 1}"
    return text


class NotificationDispatcher:
    """Base class for channel adapters."""

    def dispatch(self, action: DispatchAction) -> DispatchResult:
        """
        Deliver one notification. Adapters may raise DispatchError; use
        send() to get a DispatchResult for every outcome.
        """
        raise NotImplementedError

    def send(self, action: DispatchAction) -> DispatchResult:
        """Dispatch and convert any adapter failure into a failed result."""
        start = time.perf_counter()
        try:
            result = self.dispatch(action)
        except DispatchError as e:
            result = DispatchResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"Notification adapter crashed for group {action.alert_group_id}: {e}", exc_info=True)
            result = DispatchResult(success=False, error=f"Adapter error: {e}")
        finally:
            DISPATCH_DURATION.observe(time.perf_counter() - start)

        NOTIFICATIONS_DISPATCHED.labels(
            kind=action.kind,
            status="success" if result.success else "failed"
        ).inc()
        if result.success:
            logger.info(f"Dispatched {action.kind} notification for group {action.alert_group_id} to {action.channel_id}")
        else:
            logger.error(
                f"Dispatch of {action.kind} notification for group {action.alert_group_id} "
                f"to {action.channel_id} failed: {result.error}"
            )
        return result


class UnconfiguredDispatcher(NotificationDispatcher):
    """Used when no adapter is configured; every dispatch is a recorded failure."""

    def dispatch(self, action: DispatchAction) -> DispatchResult:
        return DispatchResult(success=False, error="No notification adapter configured")


class WebhookDispatcher(NotificationDispatcher):
    """
    POSTs a JSON notification to a single webhook endpoint.

    Timeouts, transport errors and 5xx responses are retried with bounded
    exponential backoff; 4xx responses fail immediately.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 5.0,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.url = url
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._client = client or httpx.Client(timeout=timeout)
        self._sleep = sleep

    def build_payload(self, action: DispatchAction) -> dict:
        return {
            "channel_id": action.channel_id,
            "text": render_text(action),
            "kind": action.kind,
            "escalation_level": action.escalation_level,
            "mention_here": action.mention_here,
            "mention_channel": action.mention_channel,
            "alert_group": {
                "id": str(action.alert_group_id),
                "workspace_id": action.workspace_id,
                "title": action.title,
                "severity": action.severity.value,
                "project": action.project,
                "environment": action.environment,
                "count": action.count,
                "status": action.status,
            },
        }

    def _post_once(self, payload: dict) -> DispatchResult:
        try:
            response = self._client.post(self.url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise DispatchError(f"Timed out after {self.timeout}s: {e}", retryable=True)
        except httpx.TransportError as e:
            raise DispatchError(f"Transport error: {e}", retryable=True)

        if response.status_code >= 500:
            raise DispatchError(f"Webhook returned {response.status_code}", retryable=True)
        if response.status_code >= 400:
            raise DispatchError(f"Webhook rejected notification with {response.status_code}: {response.text[:200]}")

        message_id = response.headers.get("X-Message-Id")
        if message_id is None:
            try:
                body = response.json()
                if isinstance(body, dict):
                    message_id = body.get("message_id") or body.get("ts")
            except ValueError:
                message_id = None
        return DispatchResult(success=True, provider_message_id=message_id)

    def dispatch(self, action: DispatchAction) -> DispatchResult:
        payload = self.build_payload(action)
        delay = self.backoff_seconds
        last_error: Optional[DispatchError] = None

        for attempt in range(self.max_retries + 1):
            try:
                return self._post_once(payload)
            except DispatchError as e:
                last_error = e
                if not e.retryable or attempt >= self.max_retries:
                    break
                logger.warning(
                    f"Webhook dispatch attempt {attempt + 1}/{self.max_retries + 1} failed: {e}; "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                delay = min(delay * 2, self.backoff_max_seconds)

        return DispatchResult(success=False, error=str(last_error))

    def close(self):
        self._client.close()


def record_dispatch(
    db: Session,
    action: DispatchAction,
    result: DispatchResult,
    escalation_job_id=None,
) -> NotificationLog:
    """Store the outcome of a dispatch attempt."""
    entry = NotificationLog(
        workspace_id=action.workspace_id,
        alert_group_id=action.alert_group_id,
        escalation_job_id=escalation_job_id,
        channel_id=action.channel_id,
        kind=action.kind,
        escalation_level=action.escalation_level,
        success=result.success,
        error=result.error,
        provider_message_id=result.provider_message_id,
    )
    db.add(entry)
    db.commit()
    return entry


_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    """Get the configured notification dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        settings = get_settings()
        if settings.dispatch_webhook_url:
            _dispatcher = WebhookDispatcher(
                url=settings.dispatch_webhook_url,
                timeout=settings.dispatch_timeout_seconds,
                max_retries=settings.dispatch_max_retries,
                backoff_seconds=settings.dispatch_backoff_seconds,
                backoff_max_seconds=settings.dispatch_backoff_max_seconds,
            )
        else:
            logger.warning("DISPATCH_WEBHOOK_URL is not set; notifications will be recorded as failed")
            _dispatcher = UnconfiguredDispatcher()
    return _dispatcher
