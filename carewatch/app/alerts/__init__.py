"""
alerts — Emergency alert fanout and real-time delivery.

Sub-modules:
    channels/       — SMS providers and templates, live push payloads
    alert_service   — Lifecycle: create, fan out, process, scoped reads
    recipients      — Counselor / guardian / jurisdiction-admin resolution
    registry        — Live connections per user (SSE)
    heartbeat       — Periodic heartbeat sweep over the registry
    dispatcher      — Work queue for fire-and-forget delivery jobs
    sms_worker      — Per-recipient SMS with dedup and a delivery ledger
    read_tracker    — Read state and unread counts
    store           — All SQL for alerts, recipients and the SMS ledger
    entities        — ORM tables
    directory       — People lookups (subjects, users, assignments)
    models          — Enums, state machine, shared data carriers
"""
