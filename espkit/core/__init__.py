"""
Core infrastructure for espkit: errors, host detection, directory layout,
filesystem and download helpers, retry policy, locking, manifests and config.
"""
