"""
Daybreak - personalized wake-up alarm package

Daybreak generates a spoken motivational script for each alarm ahead of time,
stores the synthesized audio durably, and plays it back when the alarm fires.

Core modules:
- utils: Environment parsing and async helpers shared across the package
- alarm: Generation, audio resolution, playback and dismissal pipeline
"""

__version__ = "0.4.2"
