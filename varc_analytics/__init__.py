"""
VARC analytics: session analysis and per-user proficiency engine.

Turns a completed practice session into surface statistics per skill
dimension, blends them into a durable confidence-weighted skill model, and
rolls the model up into a compact personalisation signal.
"""

__version__ = "1.0.0"
