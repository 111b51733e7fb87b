"""
gwsctl — Google Workspace accounts and Gmail watch lifecycle.

Package structure:
    gwsctl.config          — environment-driven paths and settings (.env aware)
    gwsctl.models          — Token, AccountInfo, WatchState dataclasses
    gwsctl.errors          — error taxonomy (kind-tagged Google API errors)
    gwsctl.token_store     — TokenStore: OS keyring or encrypted file
    gwsctl.accounts        — AccountRegistry (listing, default resolution)
    gwsctl.google_factory  — GoogleServiceFactory (per-account credentials, lazy services)
    gwsctl.retry           — RequestExecutor (backoff + circuit breaker)
    gwsctl.oauth_server    — ManageServer (loopback OAuth + account admin API)
    gwsctl.gmail_watch     — GmailWatcher, webhook receiver
    gwsctl.base            — BaseCommand (logging, timing, output)
    gwsctl.cli             — argparse entry point
"""

__version__ = "0.1.0"
