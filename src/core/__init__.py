"""Core domain package for civicwatch.

Core contains ingestion, classification, geometry and notification matching
without any storage- or transport-specific code, keeping the business logic
portable.
"""
