"""Outbound text handling shared by messaging clients."""

from .outbound import clean_outbound, split_message

__all__ = ["clean_outbound", "split_message"]
