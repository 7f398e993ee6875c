"""Data sources that publish into the broadcast dispatcher."""
