"""
Core modules for AI Quota Guard.

This package contains the quota gate, usage recorder, rollups,
alert rules, period rollover and activity reporting.
"""
