"""
Process Workflow Editor

Authoring model for business-process workflow graphs: typed nodes joined by
port-addressed edges, structural validation, publishing with versioned
snapshots, and the per-node semantics a runtime applies to a process instance.
"""

__version__ = "1.0.0"
