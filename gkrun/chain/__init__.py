"""
Restart chains.

- resolver: chain queries (root, chain, no_restarts) and mutations
  (create_restart, rename_run, delete_run)
- transfer: checkpoint / response file discovery, copying, standardising
"""
