"""
Bulk registration from a directory of product photos.

Seeds a tenant's bank from catalog images, one token per file:
    - product id is the file stem, or
    - taken from a JSON metadata list of {"filename", "product_id"} entries
"""

import json
import logging
import os
from datetime import datetime
from typing import Optional

import cv2

from .bank import BankStore
from .color_signature import extract
from .config import DEFAULT_CLUSTERS
from .errors import InvalidImageError
from .quality import assess_capture
from .tokens import encode

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.webp'}


def build_bank(image_dir: str,
               tenant_id: str,
               store: BankStore,
               metadata_path: Optional[str] = None,
               k: int = DEFAULT_CLUSTERS,
               captured_at: Optional[datetime] = None) -> dict:
    """
    Register every product image in image_dir for one tenant.

    Args:
        image_dir: Directory containing product images.
        tenant_id: Tenant that owns the registered tokens.
        store: Bank store to append to.
        metadata_path: Optional JSON list with 'filename' and 'product_id'
                       per entry. If not provided, scans image_dir.
        k: Cluster count for extraction.
        captured_at: Registration time stamped on every token
                     (defaults to now, per token).

    Returns:
        Dict with 'success', 'processed', 'errors' and 'products'.
    """
    if metadata_path and os.path.exists(metadata_path):
        with open(metadata_path, 'r', encoding='utf-8') as f:
            metadata = json.load(f)
        entries = [
            (e['filename'], e.get('product_id') or os.path.splitext(e['filename'])[0])
            for e in metadata if e.get('filename')
        ]
    else:
        entries = [
            (f, os.path.splitext(f)[0])
            for f in sorted(os.listdir(image_dir))
            if os.path.splitext(f)[1].lower() in IMAGE_EXTENSIONS
        ]

    bank = store.bank(tenant_id)
    products = set()
    processed = 0
    errors = 0

    logger.info(f"Registering {len(entries)} images from {image_dir} for tenant {tenant_id!r}")

    for i, (filename, product_id) in enumerate(entries):
        filepath = os.path.join(image_dir, filename)
        if not os.path.exists(filepath):
            logger.warning(f"Listed image missing: {filename}")
            errors += 1
            continue

        image = cv2.imread(filepath)
        if image is None:
            logger.warning(f"Could not read: {filename}")
            errors += 1
            continue

        image_rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        try:
            descriptor = extract(image_rgb, k=k)
        except InvalidImageError as e:
            logger.warning(f"Failed to process {filename}: {e}")
            errors += 1
            continue

        token = encode(
            descriptor, tenant_id, product_id,
            captured_at=captured_at,
            registration_confidence=assess_capture(image_rgb).score,
        )
        bank.register(token)
        products.add(product_id)
        processed += 1

        if (i + 1) % 100 == 0:
            logger.info(f"Processed {i + 1}/{len(entries)} images")

    logger.info(
        f"Bank built for {tenant_id!r}: {processed} tokens, "
        f"{len(products)} products, {errors} errors"
    )

    return {
        "success": processed > 0,
        "processed": processed,
        "errors": errors,
        "products": sorted(products),
    }
