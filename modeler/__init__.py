"""
Modeler

Editing engine and HTTP API for hierarchical data model definitions.
"""

__version__ = "1.0.0"
