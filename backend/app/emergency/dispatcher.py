"""
dispatcher.py — Recipient resolution and concurrent multi-channel fan-out.

═══════════════════════════════════════════════════════════════════════════
FAN-OUT FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌──────────────────────┐
    │ 1. Resolve targets    │  explicit list → contacts / directory users
    │                       │  empty list    → users in NOTIFY_ROLES,
    │                       │                  parish-narrowed for
    │                       │                  parish-scoped channels
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │ 2. Per channel        │  disabled channel      → skipped (logged)
    │                       │  recipient w/o address → SKIPPED attempt
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │ 3. Deliver            │  one job per (recipient, channel), run
    │    (bounded)          │  concurrently under a semaphore; retries
    │                       │  with backoff on the injected clock
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │ 4. Fallback           │  failed → next hop of the channel's chain
    └──────────┬───────────┘
               ▼
         DispatchReport

A failure on one recipient/channel is logged and recorded; it never aborts
the other jobs and never raises out of dispatch().

Escalations replace step 1: they go to the fixed escalation contacts plus
the users holding the matching rule's escalate_to roles, minus anyone the
alert's own fan-out targeted, on the rule's channels plus the always-on
escalation channels.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence, Set

from backend.app.core.config import settings
from backend.app.core.errors import DeliveryError
from backend.app.emergency.clock import Clock, SystemClock
from backend.app.emergency.directory import UserDirectory
from backend.app.emergency.models import (
    Alert,
    Channel,
    ChannelConfig,
    DeliveryAttempt,
    DeliveryResult,
    DeliveryStatus,
    DispatchReport,
    EscalationRule,
    Recipient,
)
from backend.app.emergency.notifier import Notifier
from backend.app.emergency.policy import (
    RetryConfig,
    build_channel_configs,
    compute_backoff,
    default_retry_config,
    fallback_chain,
)

logger = logging.getLogger(__name__)

_PHONE_RE = re.compile(r"^\+?[0-9][0-9 ()\-]{5,}$")


def _dedupe(recipients: Iterable[Recipient]) -> List[Recipient]:
    seen: Set[str] = set()
    unique: List[Recipient] = []
    for r in recipients:
        if r.recipient_id not in seen:
            seen.add(r.recipient_id)
            unique.append(r)
    return unique


def _identities(recipient: Recipient) -> Set[str]:
    keys = {recipient.recipient_id.strip().lower()}
    if recipient.email:
        keys.add(recipient.email.strip().lower())
    return keys


def contact_to_recipient(contact: str) -> Optional[Recipient]:
    """Turn a bare email address or phone number into a recipient."""
    value = contact.strip()
    if "@" in value:
        return Recipient(recipient_id=value, name=value, email=value)
    if _PHONE_RE.match(value):
        return Recipient(
            recipient_id=value, name=value, phone=value, whatsapp_enabled=True,
        )
    return None


class NotificationDispatcher:
    """Fans an alert out to its recipients across its channels."""

    def __init__(
        self,
        notifier: Notifier,
        directory: UserDirectory,
        *,
        clock: Optional[Clock] = None,
        channel_configs: Optional[Sequence[ChannelConfig]] = None,
        notify_roles: Optional[Sequence[str]] = None,
        parish_scoped_channels: Optional[Iterable[str]] = None,
        escalation_contacts: Optional[Sequence[str]] = None,
        escalation_channels: Optional[Iterable[str]] = None,
        retry: Optional[RetryConfig] = None,
        concurrency: Optional[int] = None,
    ):
        self._notifier = notifier
        self._directory = directory
        self._clock = clock or SystemClock()
        configs = channel_configs if channel_configs is not None else build_channel_configs()
        self._enabled: Set[Channel] = {c.type for c in configs if c.enabled}
        self._notify_roles = list(notify_roles if notify_roles is not None else settings.NOTIFY_ROLES)
        self._parish_scoped: Set[Channel] = {
            Channel(c) for c in (
                parish_scoped_channels if parish_scoped_channels is not None
                else settings.PARISH_SCOPED_CHANNELS
            )
        }
        self._escalation_contacts = list(
            escalation_contacts if escalation_contacts is not None
            else settings.ESCALATION_CONTACTS
        )
        self._escalation_channels = [
            Channel(c) for c in (
                escalation_channels if escalation_channels is not None
                else settings.ESCALATION_CHANNELS
            )
        ]
        self._retry = retry or default_retry_config()
        self._concurrency = concurrency or settings.DISPATCH_CONCURRENCY

    @property
    def directory(self) -> UserDirectory:
        return self._directory

    def is_enabled(self, channel: Channel) -> bool:
        return channel in self._enabled

    # ── Recipient resolution ──────────────────────────────────────────────

    async def _explicit_recipients(self, entries: Iterable[str]) -> List[Recipient]:
        resolved: List[Recipient] = []
        for entry in entries:
            recipient = contact_to_recipient(entry)
            if recipient is None:
                recipient = await self._directory.get_user(entry)
            if recipient is None:
                logger.warning("Unknown recipient %r skipped", entry)
                continue
            resolved.append(recipient)
        return _dedupe(resolved)

    async def _role_recipients(self, roles: Iterable[str]) -> List[Recipient]:
        found: List[Recipient] = []
        for role in roles:
            found.extend(await self._directory.users_by_role(role))
        return _dedupe(found)

    async def resolve_recipients(self, alert: Alert) -> Dict[Channel, List[Recipient]]:
        """Recipients per requested channel."""
        if not alert.uses_dynamic_recipients:
            explicit = await self._explicit_recipients(alert.recipients)
            return {channel: explicit for channel in alert.channels}

        base = await self._role_recipients(self._notify_roles)
        narrowed: Optional[List[Recipient]] = None
        if any(c in self._parish_scoped for c in alert.channels):
            in_parish = {
                u.recipient_id
                for u in await self._directory.users_by_parish(alert.location.parish)
            }
            narrowed = [r for r in base if r.recipient_id in in_parish]
            if not narrowed:
                logger.warning(
                    "No %s users in parish %s; parish-scoped channels go to all",
                    "/".join(self._notify_roles), alert.location.parish,
                    extra={"alert_id": alert.id},
                )
                narrowed = base

        return {
            channel: (narrowed if channel in self._parish_scoped and narrowed is not None else base)
            for channel in alert.channels
        }

    async def escalation_recipients(
        self,
        rule: Optional[EscalationRule],
        alert: Optional[Alert] = None,
    ) -> List[Recipient]:
        """
        Fixed escalation contacts plus users holding the rule's roles.

        When the alert is given, anyone its initial fan-out targeted is left
        out, matched by recipient id or email address, so escalation always
        reaches a different set of people.
        """
        contacts = await self._explicit_recipients(self._escalation_contacts)
        role_users = await self._role_recipients(rule.escalate_to) if rule else []
        candidates = _dedupe([*contacts, *role_users])
        if alert is None:
            return candidates

        already: Set[str] = set()
        for recipients in (await self.resolve_recipients(alert)).values():
            for recipient in recipients:
                already.update(_identities(recipient))
        escalation = [r for r in candidates if not (_identities(r) & already)]
        if not escalation:
            logger.warning(
                "Every escalation target for %s already received the alert",
                alert.id, extra={"alert_id": alert.id},
            )
        return escalation

    def escalation_channels(self, rule: Optional[EscalationRule]) -> List[Channel]:
        channels: List[Channel] = list(rule.channels) if rule else []
        for channel in self._escalation_channels:
            if channel not in channels:
                channels.append(channel)
        return channels

    # ── Delivery ──────────────────────────────────────────────────────────

    async def _send_once(
        self,
        alert: Alert,
        channel: Channel,
        recipient: Recipient,
        escalation: bool,
    ) -> DeliveryResult:
        try:
            return await self._notifier.send_channel(
                channel, recipient, alert, escalation=escalation,
            )
        except DeliveryError as exc:
            return DeliveryResult(delivered=False, error=exc.message)
        except Exception as exc:
            logger.exception(
                "Notifier raised for %s via %s", recipient.recipient_id, channel.value,
                extra={"alert_id": alert.id, "channel": channel.value},
            )
            return DeliveryResult(delivered=False, error=str(exc))

    async def _send_with_retry(
        self,
        alert: Alert,
        channel: Channel,
        recipient: Recipient,
        escalation: bool,
        fallback_for: Optional[Channel] = None,
    ) -> DeliveryAttempt:
        address = recipient.address_for(channel)
        attempt = DeliveryAttempt(
            channel=channel,
            recipient_id=recipient.recipient_id,
            status=DeliveryStatus.FAILED,
            address=address,
            attempted_at=self._clock.now(),
            fallback_for=fallback_for,
        )
        for attempt_num in range(1, self._retry.max_retries + 2):
            result = await self._send_once(alert, channel, recipient, escalation)
            attempt.retry_count = attempt_num - 1
            if result.delivered:
                attempt.status = DeliveryStatus.DELIVERED
                attempt.error_message = None
                return attempt
            attempt.error_message = result.error

            if attempt_num <= self._retry.max_retries:
                delay = compute_backoff(self._retry, attempt_num)
                logger.info(
                    "Retry %d/%d for %s via %s in %.1fs",
                    attempt_num, self._retry.max_retries,
                    recipient.recipient_id, channel.value, delay,
                    extra={"alert_id": alert.id, "channel": channel.value},
                )
                await self._clock.sleep(delay)

        logger.warning(
            "Delivery failed: alert=%s recipient=%s channel=%s: %s",
            alert.id, recipient.recipient_id, channel.value, attempt.error_message,
            extra={
                "alert_id": alert.id,
                "channel": channel.value,
                "recipient_id": recipient.recipient_id,
            },
        )
        return attempt

    async def _deliver(
        self,
        alert: Alert,
        channel: Channel,
        recipient: Recipient,
        requested: Set[Channel],
        escalation: bool,
        semaphore: asyncio.Semaphore,
    ) -> List[DeliveryAttempt]:
        async with semaphore:
            attempts = [await self._send_with_retry(alert, channel, recipient, escalation)]
            if attempts[0].status is DeliveryStatus.DELIVERED:
                return attempts

            for hop in fallback_chain(channel):
                if hop in requested or not self.is_enabled(hop):
                    continue
                if recipient.address_for(hop) is None:
                    continue
                logger.info(
                    "%s failed for %s, falling back to %s",
                    channel.value, recipient.recipient_id, hop.value,
                    extra={"alert_id": alert.id, "channel": hop.value},
                )
                result = await self._send_with_retry(
                    alert, hop, recipient, escalation, fallback_for=channel,
                )
                attempts.append(result)
                if result.status is DeliveryStatus.DELIVERED:
                    break
            return attempts

    async def _fan_out(
        self,
        alert: Alert,
        targets: Dict[Channel, List[Recipient]],
        *,
        escalation: bool,
    ) -> DispatchReport:
        report = DispatchReport(
            alert_id=alert.id,
            escalation=escalation,
            started_at=self._clock.now(),
        )
        semaphore = asyncio.Semaphore(self._concurrency)
        requested = set(targets)
        jobs = []

        for channel, recipients in targets.items():
            if not self.is_enabled(channel):
                logger.warning(
                    "Channel %s is disabled; skipping for alert %s",
                    channel.value, alert.id,
                    extra={"alert_id": alert.id, "channel": channel.value},
                )
                continue
            for recipient in recipients:
                if recipient.address_for(channel) is None:
                    logger.debug(
                        "Skipping %s for %s (no address)",
                        channel.value, recipient.recipient_id,
                    )
                    report.attempts.append(DeliveryAttempt(
                        channel=channel,
                        recipient_id=recipient.recipient_id,
                        status=DeliveryStatus.SKIPPED,
                        attempted_at=self._clock.now(),
                    ))
                    continue
                jobs.append(self._deliver(
                    alert, channel, recipient, requested, escalation, semaphore,
                ))

        for attempts in await asyncio.gather(*jobs):
            report.attempts.extend(attempts)
        report.completed_at = self._clock.now()

        logger.info(
            "%s fan-out for %s: %d/%d recipients reached, %d attempts",
            "Escalation" if escalation else "Alert", alert.id,
            report.recipients_reached, report.total_recipients, len(report.attempts),
            extra={"alert_id": alert.id},
        )
        return report

    async def dispatch(self, alert: Alert) -> DispatchReport:
        """Notify an alert's recipients on the alert's own channels."""
        targets = await self.resolve_recipients(alert)
        return await self._fan_out(alert, targets, escalation=False)

    async def dispatch_escalation(
        self,
        alert: Alert,
        rule: Optional[EscalationRule] = None,
    ) -> DispatchReport:
        """Notify the escalation contact set, independent of the alert's recipients."""
        recipients = await self.escalation_recipients(rule, alert)
        targets = {channel: recipients for channel in self.escalation_channels(rule)}
        return await self._fan_out(alert, targets, escalation=True)
