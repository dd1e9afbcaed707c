"""Offline training of the packet classifier."""
