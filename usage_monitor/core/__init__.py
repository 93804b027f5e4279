"""
Core modules for the usage monitor.

This package contains billing-cycle arithmetic, usage resolution, alerting,
pricing and the poll coordinator.
"""
