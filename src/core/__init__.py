"""Core domain package for subrelay.

Core contains scheduling, dispatch governance, and shutdown logic without any
Reddit, Telegram or storage-specific code, keeping the relay logic portable.
"""
