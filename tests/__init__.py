"""Tests for thread dispatch."""
