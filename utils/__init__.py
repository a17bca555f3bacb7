"""
Utilidades comunes
"""
