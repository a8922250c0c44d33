"""
NODE LEDGER

Task & earnings ledger for inference nodes, with gateway synchronization.
"""

__version__ = "1.0.0"
