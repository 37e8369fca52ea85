"""
multi_roblox — Multi-Account Session Manager for the Roblox macOS client
========================================================================

Keeps one session cookie per account in the macOS Keychain, syncs it with
the Vivaldi cookie database and the client's private binarycookies cache,
validates it against the Roblox identity API, and launches isolated client
instances authenticated as different accounts.

Usage:
    from multi_roblox.session_manager import get_session_manager

    mgr = get_session_manager()
    mgr.launch_sync("account_1", place="https://www.roblox.com/games/920587237")
"""

__version__ = "1.3.0"
