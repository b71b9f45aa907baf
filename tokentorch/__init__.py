"""Claude usage monitor with burn-rate projection."""

__version__ = '1.0.0'
