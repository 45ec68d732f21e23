"""Durable storage for outcome counters, priorities and audit logs."""

from optiloop.persistence.database import Database

__all__ = ["Database"]
