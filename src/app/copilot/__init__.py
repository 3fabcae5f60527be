"""Copilot module -- AI-assisted deal analysis.

Builds requests for the external deal-analysis function, relays its
streamed output, and stores finished analyses per deal.
"""
