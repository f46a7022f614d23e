from .value_score import score, score_label, cost_ratio

__all__ = ["score", "score_label", "cost_ratio"]
