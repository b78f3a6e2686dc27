"""
emergency — SOS alert dispatch and delivery tracking.

Sub-modules:
    models      — Contact / ContactList / Alert / DeliveryRecord value types
    track_id    — shareable tracking-code generation
    composer    — alert and resolution message templates
    channels/   — messaging provider backends (WhatsApp via Twilio)
    dispatcher  — paced sequential fan-out with per-contact outcomes
    store       — async SQLAlchemy persistence for contact lists and alerts
    lifecycle   — trigger / resolve orchestration
"""
