"""Tests for helmsman."""
