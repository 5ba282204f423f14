"""peerchat - peer-to-peer chat with file transfer"""

__version__ = "1.0.0"
