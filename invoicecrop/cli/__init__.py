"""Command line interface for invoicecrop."""
