"""PyQt6 desktop panel for driving the Zoom toggles without a Stream Deck."""
