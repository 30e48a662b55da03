"""
appshift - move application data to another volume behind a directory junction.
"""

__version__ = "0.3.0"
