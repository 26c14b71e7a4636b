"""MemSnap: snapshot learning cards with SM-2 spaced-repetition scheduling."""

__version__ = "0.1.0"
