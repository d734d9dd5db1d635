"""
Upstream scraper: fetches entity records by numeric id and writes shards.

  normalize     origin payload → record mapping (career grouping, FX, races)
  homas_client  httpx client for the origin service
  worker_pool   bounded worker pool with completion-order early termination
"""
