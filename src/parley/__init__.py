"""
Parley - live spoken conversation server

Streams microphone audio to a speech recognizer, decides when the user has
finished speaking, routes the utterance to a language model and streams
synthesized speech back, staying interruptible the whole time.
"""

__version__ = "1.0.0"
__author__ = "Parley Team"

from .cli import main

__all__ = ["main"]
