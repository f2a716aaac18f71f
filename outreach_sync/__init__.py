"""
Outreach Sync - resumable sync engine for sales outreach platforms
"""
__version__ = "1.0.0"
