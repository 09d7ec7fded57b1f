"""
CABINEX - Libro de saldos e intercambio de órdenes entre cabinetes.
"""

__version__ = "0.1.0"
