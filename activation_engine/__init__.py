"""
Audience activation engine.

Normalizes and hashes first-party user identifiers and activates them as
remote audiences on Google Ads (Customer Match), Meta (Custom Audiences)
and TikTok (Custom Audiences).
"""

__version__ = "0.1.0"
