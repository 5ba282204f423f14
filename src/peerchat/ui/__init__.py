"""
peerchat Chat Window

Qt front-end for a chat session.
"""

from .app import ChatApp

__all__ = ["ChatApp"]
