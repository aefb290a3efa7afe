"""Command line front-end for ocisync."""
