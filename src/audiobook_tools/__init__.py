"""Audiobook Tools -- batch-convert MP3 audiobooks to M4B and merge chapter folders.

Core modules:
    service      -- ConversionService: environment validation, start_batch /
                    start_merge returning a BatchHandle (progress stream + result
                    future), idempotent cancel.
    scheduler    -- Bounded-parallelism FIFO scheduler on a thread pool with a
                    stagger delay between starts.
    worker       -- One ffmpeg child per job. Parses ``-progress pipe:1`` output,
                    terminates the child on cancellation or stall, removes partial
                    output on every failure path.
    encoder      -- ffmpeg command construction (convert, concat + FFMETADATA1 merge).
    progress     -- Per-file progress table and throttled overall ProcessingUpdates.
    chapters     -- Natural-sorted chapter plans with contiguous start offsets.
    merger       -- Single-slot merge job with chapter-count verification.
    collector    -- Library integration and ProcessingResult assembly.
    capabilities -- psutil host probe and parallel-job recommendations.
    cancellation -- Cancellation tokens shared by scheduler and workers.
    library_db   -- SQLite library of converted books (WAL, per-thread connections).
    config       -- Configuration via pydantic-settings (.env + env vars).
    ffprobe      -- Audio file inspection via ffprobe subprocess. Numeric functions raise
                    ValueError on empty ffprobe output (corrupt files, missing binary).
    sanitize     -- Filename and chapter-title sanitization.
    cli          -- Click CLI: convert, merge, chapters, info.
"""
