"""
emergency — Emergency alert lifecycle & escalation engine.

Sub-modules:
    models      — Alert, recipients, delivery records, channel/rule config
    policy      — Escalation delay table, default channel configs and rules,
                  channel fallback chain, delivery retry parameters
    clock       — System and virtual clocks (timestamps + sleeping)
    ledger      — Append-only record store: in-memory and SQL adapters
    directory   — User directory used for dynamic recipient resolution
    store       — In-memory index of open alerts, rebuilt by ledger replay
    scheduler   — One cancellable escalation countdown per open alert
    notifier    — Single send_channel() entry point over channels/
    dispatcher  — Recipient resolution and concurrent multi-channel fan-out
    engine      — Public orchestrator: create / acknowledge / resolve /
                  escalate, statistics, configuration lookup
"""
