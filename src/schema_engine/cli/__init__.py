"""Command line and interactive console front ends."""
