"""Core domain package for silentzone.

Core contains rule matching, page scanning and rule reconciliation logic
without any storage- or transport-specific code, keeping the business
logic portable.
"""
