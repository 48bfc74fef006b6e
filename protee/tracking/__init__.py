from protee.tracking.mps import MPSAnalysis, NearMiss, NearMissKind, analyze_mps, find_mps_hits

__all__ = ["MPSAnalysis", "NearMiss", "NearMissKind", "analyze_mps", "find_mps_hits"]
