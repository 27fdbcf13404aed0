"""State layer.

This package is the single source of truth for the local mirror of a remote
table: the :class:`~tablesync.state.snapshot.Snapshot` and the rules that
merge change-feed events into it.
"""
