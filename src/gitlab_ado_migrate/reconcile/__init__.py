"""Desired-state reconciliation of Azure DevOps entities."""

from .base import EnsureOptions, EnsureOutcome, EnsureResult, EntityHandler, Reconciler

__all__ = ['EnsureOptions', 'EnsureOutcome', 'EnsureResult', 'EntityHandler', 'Reconciler']
