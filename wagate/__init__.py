"""wagate - resilient WhatsApp Web session gateway."""

__version__ = "0.1.0"
