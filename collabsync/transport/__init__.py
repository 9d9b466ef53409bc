"""Realtime transports."""
