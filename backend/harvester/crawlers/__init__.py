"""Browser implementations for gallery pages."""

from .stealth import BrowserSession, StealthBrowser

__all__ = ['BrowserSession', 'StealthBrowser']
