"""Highload Settlement - exchange deposit and withdrawal core for TON Highload Wallet V3."""

__version__ = "0.1.0"
