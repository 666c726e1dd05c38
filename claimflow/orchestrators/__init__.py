"""
ClaimFlow Orchestrators
"""
