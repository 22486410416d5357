"""
Webhook module - inbound push sources and the ingestion pipeline.
"""
