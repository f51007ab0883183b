"""Result table output."""

from gridregime.io.table_sink import write_candidate_scores, write_cluster_summary, write_table

__all__ = ["write_table", "write_cluster_summary", "write_candidate_scores"]
