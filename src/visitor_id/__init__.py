"""
visitor-id: Returning Visitor Recognition

Client-token lookup backed by weighted device fingerprint matching,
device-change classification, and an append-only change history.
"""

__version__ = "0.1.0"
