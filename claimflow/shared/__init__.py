"""
ClaimFlow - Shared Components
Schemas, configuration, exceptions and monitoring used by every module
"""
