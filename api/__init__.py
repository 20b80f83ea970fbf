"""
API Module
==========
FastAPI host cho Autoscaling Decision Engine.
"""
