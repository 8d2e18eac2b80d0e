"""Handlers shipped with pc2mqtt."""
