"""
recongraph - Reconnaissance graph engine

Holds a mutable entity-relationship graph of hosts, domains, accounts and
organizations, lets callers select and traverse it, and enriches it by
running pluggable asynchronous transforms against the current selection.
"""

__version__ = "0.1.0"
