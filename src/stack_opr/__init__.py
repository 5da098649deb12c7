"""Operator engine for stack-based deployment orchestration.

Builds a dependency-ordered plan from resource descriptors and walks it
to apply or destroy each resource, persisting per-resource state so that
re-runs resume where the last run stopped.
"""
