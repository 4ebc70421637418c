"""
SDK for AI Quota Guard.

Provides quota-metered wrappers around model clients.
"""

from .openai_client import GuardedOpenAI

__all__ = ["GuardedOpenAI"]
