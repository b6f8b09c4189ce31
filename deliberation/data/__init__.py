"""Persistence boundary for sessions, roles, candidates, view state, votes and ballots."""

from .gateway import PersistenceGateway, get_gateway

__all__ = ["PersistenceGateway", "get_gateway"]
