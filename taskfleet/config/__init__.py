"""Bundled configuration defaults and policy helpers."""
