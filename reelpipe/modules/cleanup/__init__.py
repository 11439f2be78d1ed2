"""Orphaned output removal and stalled run recovery."""
