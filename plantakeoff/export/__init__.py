"""
Report and overlay output for downstream document generation.
"""
