"""
Vision inference collaborators.
"""
