"""HTTP API for atvbridge.

A FastAPI application translating REST calls into registry operations.
"""
