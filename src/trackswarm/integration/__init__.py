"""Post-run merge flow."""
