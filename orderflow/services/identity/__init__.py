"""Identity lookups and the role permission gate."""
