"""
User feature: persistence, wire models and HTTP routes.
"""
