"""
alerts — Blocked-vehicle alert fanout and push delivery engine.

Sub-modules:
    channels/       — Push provider (FCM HTTP v1) and its OAuth2 credentials
    fanout          — Plate fingerprint → recipient set
    accounts        — Users, plate registrations, device tokens
    alert_service   — Alert / recipient state store, stats and reputation
    escalation      — Urgency × step → message template and priority
    dispatcher      — Concurrent per-device delivery and outcome handling
    workflow        — Request-facing operations and authorization
    jobs            — Expiry sweep and retention purge
    models          — Enums and value objects shared across the system
    tables          — SQLAlchemy ORM tables
"""
