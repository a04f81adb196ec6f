"""
product_vision — Colour-signature product recognition for point-of-sale.

Extracts a compact colour fingerprint from a captured frame, matches it
against a per-tenant bank of registered fingerprints, and decides whether
the product was recognised, needs disambiguation, or should be registered.

Modules:
    engine           VisionEngine: register / recognize / open_session
    session          RecognitionSession state machine, cameras, auto capture
    color_signature  k-means colour descriptor extraction
    tokens           VisualToken encoding and hashing
    bank             Append-only per-tenant token stores
    matcher          Per-product ranking against a bank
    scoring          Descriptor distance and ranking order
    prefilter        FAISS shortlist for large banks
    quality          Capture quality (registration confidence)
    preprocessing    Buffer validation, cropping, downscaling
    index_builder    Bulk registration from image directories
    retry            Exponential backoff for remote stores
    config           Environment-driven defaults
    errors           Error taxonomy
"""

__version__ = "1.0.0"
