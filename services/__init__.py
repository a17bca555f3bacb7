"""
Servicios de datos AEMET
"""
