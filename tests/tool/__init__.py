"""Tests for the helmsman command line tool."""
