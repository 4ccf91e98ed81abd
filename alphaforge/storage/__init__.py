"""
Persistence for broker sessions (SQLAlchemy, Fernet encryption at rest).
"""
