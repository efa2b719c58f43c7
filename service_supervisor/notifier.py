"""Edge-triggered alert delivery."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx
import structlog

from .classifier import failing, score
from .config import NotificationsConfig
from .errors import NotificationFailure
from .models import HealthClassification, ProbeResult, RemediationResult, Severity

logger = structlog.get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LEN = 3900


@dataclass(frozen=True)
class NotificationContext:
    service: str
    results: list[ProbeResult] = field(default_factory=list)
    remediation: RemediationResult | None = None
    restart_attempt_count: int = 0
    max_attempts: int = 0
    snapshot_path: str | None = None


@dataclass(frozen=True)
class Alert:
    severity: Severity
    title: str
    message: str
    payload: dict[str, Any]


def severity_for(to: HealthClassification) -> Severity:
    if to is HealthClassification.HEALTHY:
        return Severity.INFO
    if to is HealthClassification.DEGRADED:
        return Severity.WARNING
    return Severity.CRITICAL


def _detail_lines(context: NotificationContext) -> list[str]:
    lines: list[str] = []
    if context.results:
        passed, total, percent = score(context.results)
        lines.append(f"Probes: {passed}/{total} passing ({percent}%)")
        for r in failing(context.results)[:10]:
            lines.append(f"- {r.name}: {r.detail or 'failed'}"[:300])

    rem = context.remediation
    if rem is not None and rem.attempted:
        outcome = "succeeded" if rem.ok else f"failed ({rem.error or 'service still unhealthy'})"
        lines.append(f"Restart attempt {rem.attempt}/{context.max_attempts} {outcome}")
    elif rem is not None and rem.skipped_reason:
        lines.append(f"Restart skipped: {rem.skipped_reason}")

    if context.snapshot_path:
        lines.append(f"Diagnostics: {context.snapshot_path}")
    return lines


def build_transition_alert(
    from_: HealthClassification, to: HealthClassification, context: NotificationContext
) -> Alert:
    severity = severity_for(to)
    if to is HealthClassification.HEALTHY:
        title = f"{context.service} recovered to healthy state"
    elif to is HealthClassification.DEGRADED:
        title = f"{context.service} is degraded"
    else:
        title = f"{context.service} is critical"

    lines = [title, f"Transition: {from_.value} -> {to.value}", *_detail_lines(context)]
    return Alert(
        severity=severity,
        title=title,
        message="\n".join(lines).strip(),
        payload={
            "service": context.service,
            "kind": "transition",
            "from": from_.value,
            "to": to.value,
        },
    )


def build_escalation_alert(
    context: NotificationContext, from_: HealthClassification = HealthClassification.CRITICAL
) -> Alert:
    title = (
        f"{context.service} is critical: maximum restart attempts ({context.max_attempts}) exceeded. "
        "Manual intervention required."
    )
    lines = [title, *_detail_lines(context), "Reset supervisor state after fixing: service-supervisor --reset-state"]
    return Alert(
        severity=Severity.CRITICAL,
        title=title,
        message="\n".join(lines).strip(),
        payload={
            "service": context.service,
            "kind": "escalation",
            "from": from_.value,
            "to": HealthClassification.CRITICAL.value,
            "restart_attempt_count": context.restart_attempt_count,
        },
    )


class AlertLogSink:
    """Appends one line per alert to a local alert log."""

    name = "alert_log"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def send(self, alert: Alert) -> None:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        line = f"[{ts}] [{alert.severity.value.upper()}] {alert.title}\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as exc:
            raise NotificationFailure(f"cannot append to {self.path}: {exc}") from exc


class WebhookSink:
    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport

    async def send(self, alert: Alert) -> None:
        body = {"severity": alert.severity.value, "message": alert.message, **alert.payload}
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout_seconds) as client:
            try:
                resp = await client.post(self.url, json=body)
            except httpx.HTTPError as exc:
                raise NotificationFailure(f"webhook error: {type(exc).__name__}: {exc}") from exc
        if not (200 <= resp.status_code < 300):
            raise NotificationFailure(f"webhook returned {resp.status_code}")


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """Split on line breaks where possible so each part fits one Telegram message."""
    remaining = (text or "").strip()
    if not remaining:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while len(remaining) > max_len:
        cut = remaining.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        parts.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        parts.append(remaining)
    return parts


class TelegramSink:
    name = "telegram"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport

    def _redact(self, text: str) -> str:
        return text.replace(self.bot_token, "<redacted>") if self.bot_token else text

    async def send(self, alert: Alert) -> None:
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        text = f"[{alert.severity.value.upper()}] {alert.message}"
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout_seconds) as client:
            for part in split_telegram_message(text):
                try:
                    resp = await client.post(url, json={"chat_id": self.chat_id, "text": part})
                    data = resp.json()
                except (httpx.HTTPError, ValueError) as exc:
                    raise NotificationFailure(self._redact(f"telegram error: {type(exc).__name__}: {exc}")) from exc
                if not (isinstance(data, dict) and data.get("ok")):
                    desc = data.get("description") if isinstance(data, dict) else None
                    raise NotificationFailure(self._redact(f"telegram rejected message: {desc or resp.status_code}"))


class Notifier:
    """
    Fire-and-forget delivery to every configured sink, with one retry per
    sink. Delivery failures are logged and never raised.
    """

    def __init__(
        self,
        sinks: list[Any],
        *,
        retry_delay_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.sinks = list(sinks)
        self.retry_delay_seconds = float(retry_delay_seconds)
        self._sleep = sleep

    async def _deliver_one(self, sink: Any, alert: Alert) -> bool:
        for attempt in (1, 2):
            try:
                await sink.send(alert)
                return True
            except NotificationFailure as exc:
                err = str(exc)
            except Exception as exc:
                err = f"{type(exc).__name__}: {exc}"
            if attempt == 1:
                logger.warning("Notification delivery failed, retrying", sink=sink.name, error=err)
                if self.retry_delay_seconds > 0:
                    await self._sleep(self.retry_delay_seconds)
            else:
                logger.error("Notification delivery failed", sink=sink.name, error=err)
        return False

    async def deliver(self, alert: Alert) -> bool:
        log = logger.info if alert.severity is Severity.INFO else logger.warning
        log("Alert", severity=alert.severity.value, title=alert.title)
        if not self.sinks:
            return False
        delivered = await asyncio.gather(*(self._deliver_one(s, alert) for s in self.sinks))
        return any(delivered)

    async def notify(
        self, from_: HealthClassification, to: HealthClassification, context: NotificationContext
    ) -> bool:
        return await self.deliver(build_transition_alert(from_, to, context))

    async def escalate(
        self, context: NotificationContext, from_: HealthClassification = HealthClassification.CRITICAL
    ) -> bool:
        return await self.deliver(build_escalation_alert(context, from_))


def build_notifier(
    config: NotificationsConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Notifier:
    sinks: list[Any] = []
    if config.alert_log:
        sinks.append(AlertLogSink(config.alert_log))
    if config.webhook_url:
        sinks.append(WebhookSink(config.webhook_url, timeout_seconds=config.webhook_timeout_seconds, transport=transport))
    if config.telegram_bot_token and config.telegram_chat_id:
        sinks.append(TelegramSink(config.telegram_bot_token, config.telegram_chat_id, transport=transport))
    elif config.telegram_bot_token or config.telegram_chat_id:
        logger.warning("Telegram sink needs both bot token and chat id; disabled")
    return Notifier(sinks, retry_delay_seconds=config.retry_delay_seconds)
