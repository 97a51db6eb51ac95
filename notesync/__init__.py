"""
notesync - offline-first note synchronization

Keeps a locally stored collection of notes usable while offline, reconciles it
against a remote Supabase backend, queues outgoing changes, applies incoming
change notifications, and maintains denormalized tag usage counts.
"""

__version__ = "0.1.0"
