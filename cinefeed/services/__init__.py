"""Clients for the upstream content providers."""
