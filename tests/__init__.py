"""
Test suite for the route optimizer and relay aggregator

Run all tests with: pytest tests/
"""

import os
import sys

# Add parent directory to Python path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
