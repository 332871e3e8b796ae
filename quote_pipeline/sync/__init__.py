"""
Client-side synchronization layer.

A partially replicated, polling-refreshed view of the request pipeline:

    gateway.RequestGateway    all outbound HTTP to the backing API
    cache.RequestCache        id → summary|full records, merge-on-refresh
    service.RequestSyncService owned poll loop, on-demand promotion, writes
    search.DebouncedSearch    abortable search-as-you-type
    ticker.IntervalTicker     injectable poll scheduler
"""
