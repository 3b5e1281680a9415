"""
Core infrastructure: database, errors, security, logging.
"""
