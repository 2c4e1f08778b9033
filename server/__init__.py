"""escrowd server: deal custody, arbiter registry, deal directory, HTTP API."""
