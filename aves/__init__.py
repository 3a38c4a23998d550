"""
Aves adaptive learning engine.

Spaced repetition scheduling, single-flight generation caching and online
pattern learning for the visual vocabulary app.
"""

__version__ = "1.0.0"
