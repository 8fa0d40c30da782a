"""Multi-channel chat relay: session continuity and message routing for SMS, WhatsApp and voice."""

__version__ = "1.0.0"
