"""
Supergod-only platform views: cross-tenant stats, system diagnostics, unrestricted role changes.
"""
