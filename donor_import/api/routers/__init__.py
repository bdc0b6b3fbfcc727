"""
FastAPI routers for the donor import service.
"""
