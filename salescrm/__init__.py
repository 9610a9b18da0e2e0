"""
Client-side engine for the clinic CRM sales pipeline board.

The remote clinic API owns every record; this package keeps the in-memory
board, drives the drag-and-drop protocol and reconciles optimistic edits.
"""

__version__ = "0.1.0"
