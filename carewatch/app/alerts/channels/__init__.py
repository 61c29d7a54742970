"""
channels — Per-channel delivery backends.

    sms_gateway — SMS providers, phone normalisation, message templates
    live_push   — payloads for the live push (SSE) channel

Channels hold no alert state. Dedup, ledger writes and fanout live in
sms_worker and alert_service.
"""
