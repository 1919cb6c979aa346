"""
channels — Per-channel delivery backends.

Each channel module exposes:
    async send(alert, recipient, address, *, escalation=False) → DeliveryResult

Channels are stateless functions that render the alert for their medium
and hand it to the configured provider. Retry, fallback and recipient
resolution live in the dispatcher; the notifier maps Channel → send().
"""
