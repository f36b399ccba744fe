"""
regwatch - crawler scheduling, run monitoring and staged AI risk classification.
"""

__version__ = "0.1.0"
