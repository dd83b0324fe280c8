"""Subscription billing over Cameroonian mobile money gateways."""

__version__ = "0.1.0"
