"""
catalog.py — catalog image indexing for the recognition tiers.

Every product photo is fingerprinted once, when it enters the catalog:
three perceptual hashes (Tier 1) and a colour/aspect feature vector (Tier 2).
Inbound customer photos are compared against these stored values only.

CLI:
  python catalog.py add --workspace shop1 --name "Red Kurti" --price 590 \
      --image kurti.jpg --sizes S,M,L --colors Red --stock 10
  python catalog.py reindex --product-id 7 --image kurti.jpg
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Optional

import database as db
import image_hash
import visual_features
from images import ImageInput, load_image

logger = logging.getLogger(__name__)


async def index_product_image(product_id: int, image: ImageInput) -> bool:
    """
    Compute and store [full, center, square] hashes plus the feature vector.
    Returns False if the product does not exist.
    """
    img = load_image(image)
    hashes = image_hash.generate_multi_hash(img)
    features = visual_features.extract_features(img)
    stored = await db.update_product_index(product_id, hashes, features.to_dict())
    if stored:
        logger.info("Indexed product %d (hashes %s)", product_id, ", ".join(hashes))
    else:
        logger.warning("Product %d not found; nothing indexed", product_id)
    return stored


async def add_product_with_image(
    workspace_id: str,
    name: str,
    price: float,
    image: ImageInput,
    description: str = "",
    category: str = "",
    stock_quantity: int = 0,
    image_url: str = "",
    sizes: Optional[list[str]] = None,
    colors: Optional[list[str]] = None,
    search_keywords: Optional[list[str]] = None,
) -> db.Product:
    """Insert a product and index its photo in one step."""
    product = await db.add_product(
        workspace_id=workspace_id,
        name=name,
        price=price,
        description=description,
        category=category,
        stock_quantity=stock_quantity,
        image_url=image_url,
        sizes=sizes,
        colors=colors,
        search_keywords=search_keywords,
        dominant_colors=[c.lower() for c in colors or []],
    )
    await index_product_image(product.id, image)
    return await db.get_product(product.id)


def _split(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


async def _run(args: argparse.Namespace) -> None:
    await db.init_db()
    data = Path(args.image).expanduser().read_bytes()

    if args.command == "reindex":
        if not await index_product_image(args.product_id, data):
            raise SystemExit(f"Product {args.product_id} not found")
        return

    product = await add_product_with_image(
        workspace_id=args.workspace,
        name=args.name,
        price=args.price,
        image=data,
        description=args.description,
        category=args.category,
        stock_quantity=args.stock,
        image_url=args.image_url,
        sizes=_split(args.sizes),
        colors=_split(args.colors),
        search_keywords=_split(args.keywords) or None,
    )
    print(f"Added product {product.id}: {product.name} ({', '.join(product.image_hashes)})")


def main() -> None:
    parser = argparse.ArgumentParser(description="Manage catalog product images")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Add a product and index its photo")
    add.add_argument("--workspace", required=True)
    add.add_argument("--name", required=True)
    add.add_argument("--price", type=float, required=True)
    add.add_argument("--image", required=True, help="Path to the product photo")
    add.add_argument("--image-url", default="", help="Public URL shown on product cards")
    add.add_argument("--description", default="")
    add.add_argument("--category", default="")
    add.add_argument("--stock", type=int, default=0)
    add.add_argument("--sizes", default="", help="Comma-separated, e.g. S,M,L")
    add.add_argument("--colors", default="", help="Comma-separated, e.g. Red,Blue")
    add.add_argument("--keywords", default="", help="Comma-separated search keywords")

    reindex = sub.add_parser("reindex", help="Recompute hashes for an existing product")
    reindex.add_argument("--product-id", type=int, required=True)
    reindex.add_argument("--image", required=True)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    asyncio.run(_run(parser.parse_args()))


if __name__ == "__main__":
    main()
