"""
Services Package

External integrations: the ledger store backends and the exchange
rate provider.
"""
