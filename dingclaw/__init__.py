"""
dingclaw - DingTalk Stream channel for agent runtimes.
"""

__version__ = "0.1.0"
__logo__ = "🔔"
