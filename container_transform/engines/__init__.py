"""
Container engine integration for the source (Docker) and target (iSulad) sides.
"""
