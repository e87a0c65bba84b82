"""Retention policies and the sweep engine that enforces them."""
