"""Bluetooth Low Energy protocol core."""
