"""Zoom desktop client and Stream Deck host integration for the Zoomer plugin."""
