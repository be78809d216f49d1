"""REST API for invoicecrop."""
