"""
Authorization policy store service.
"""
