"""
Trade mirroring pipeline.

normalizer -> market guard / category filter -> pricing -> MirrorEngine.decide
"""
