"""
Record linkage and reconciliation services.

Modules:
    normalizer: Text, city and key normalization shared by matching and dedup
    similarity: Pluggable string similarity strategies (rapidfuzz)
    matcher: Weighted, scope-aware scoring of a raw record against canonicals
    linker: Raw-to-canonical links with one primary per canonical record
    provenance: Field-level ownership, re-scrape diffs and curator edits
    service: Match phase of a sync (link, create, resolve event references)
    deduplicator: Merge duplicate canonical records
    publishing: Event lifecycle state machine and publish validation
    enrichment: MusicBrainz lookups that fill missing artist fields

Services take an AsyncSession; pipeline-facing methods leave the commit to
the caller while admin operations commit their own transaction.
"""

__all__ = [
    "Matcher",
    "Linker",
    "ProvenanceUnifier",
    "MatchService",
    "Deduplicator",
    "PublishWorkflow",
    "ArtistEnricher",
]
