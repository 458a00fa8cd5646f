# covercart/core/__init__.py
"""
Core building blocks: settings, logging, exceptions, database, security and
FastAPI dependencies. The app factory lives in covercart.main.
"""
