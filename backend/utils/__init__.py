"""
Shared backend utilities
"""
