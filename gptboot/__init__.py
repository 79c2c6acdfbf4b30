"""Failsafe boot-chain updates on GPT disks: header state, CRCs, entry swapping and boot LUN selection."""

__version__ = "0.1.0"