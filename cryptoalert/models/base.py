"""Declarative base shared by all models"""
from cryptoalert.database import Base

__all__ = ["Base"]
