from roster.config.feature_flags import FeatureFlags, feature_flags, get_bool_env
from roster.config.rank_policy import RankPolicy, rank_policy

__all__ = [
    "FeatureFlags",
    "feature_flags",
    "get_bool_env",
    "RankPolicy",
    "rank_policy",
]
