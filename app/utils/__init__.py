"""
UTILITIES PACKAGE
=================

Helpers used by the services and routes:

  retry       - with_retry(fn): calls fn(); on failure retries with exponential backoff (Supermemory search).
  annotations - maps normalized boxes/points onto an image and draws the overlay (Pillow).
"""
