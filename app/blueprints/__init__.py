"""
Production Workflow & Billing
Blueprint registry.
"""
