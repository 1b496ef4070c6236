#!/usr/bin/env python3
"""Train a vocabulary tree on a directory of images.

This script builds a hierarchical Bag of Visual Words vocabulary by:
1. Extracting ORB descriptors from every image found under a directory
2. Clustering them recursively into a k^L vocabulary tree
3. Weighting the words by inverse document frequency over the images
4. Saving the vocabulary (.txt, .npz or .yml by suffix)

With --test-database, the images are also added to a database and each
one is queried against it, which should rank the image itself first.

Usage:
    uv run python scripts/train_vocabulary.py --image-dir data/images
    uv run python scripts/train_vocabulary.py --image-dir data/images -k 9 -L 3
    uv run python scripts/train_vocabulary.py --image-dir data/images --config config/bow.yaml

The trained vocabulary is saved to data/vocabulary.yml.gz by default.
"""

import argparse
import logging
import sys
import time
from pathlib import Path

import cv2
import numpy as np

from semantic_bow import (
    Database,
    ScoringType,
    VocabularyConfig,
    VocabularyTree,
    WeightingType,
    load_config,
)

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".bmp", ".pgm")


def collect_descriptors(
    image_dir: Path,
    n_features: int = 500,
    max_images: int | None = None,
    skip_every: int = 1,
) -> list[np.ndarray]:
    """Extract ORB descriptors from the images under a directory.

    Args:
        image_dir: Directory searched recursively for images
        n_features: Number of ORB features per image
        max_images: Maximum images to process (None for all)
        skip_every: Process every Nth image (for speed)

    Returns:
        One descriptor array per image, shape (N_i, 32)
    """
    orb = cv2.ORB_create(nfeatures=n_features)
    per_image: list[np.ndarray] = []

    image_paths = sorted(
        p for p in image_dir.rglob("*") if p.suffix.lower() in IMAGE_SUFFIXES
    )
    print(f"Found {len(image_paths)} images in {image_dir}")

    for i, img_path in enumerate(image_paths):
        if max_images and len(per_image) >= max_images:
            print(f"Reached max_images limit ({max_images})")
            break

        if i % skip_every != 0:
            continue

        img = cv2.imread(str(img_path), cv2.IMREAD_GRAYSCALE)
        if img is None:
            continue

        _, descriptors = orb.detectAndCompute(img, None)

        if descriptors is not None and len(descriptors) > 0:
            per_image.append(descriptors)

    if not per_image:
        raise ValueError(f"No descriptors found in {image_dir}")

    total = sum(len(d) for d in per_image)
    print(f"Collected {total} descriptors from {len(per_image)} images")

    return per_image


def run_database_check(vocabulary: VocabularyTree, features: list[np.ndarray]) -> None:
    """Add every image to a database and query each one back."""
    database = Database(vocabulary)
    for descriptors in features:
        database.add(descriptors)
    print(database)

    n_matched = 0
    for image_id, descriptors in enumerate(features):
        results = database.query(descriptors, max_results=4)
        ranked = ", ".join(f"{r.image_id} ({r.score:.3f})" for r in results)
        print(f"  Image {image_id}: {ranked}")
        if results and results[0].image_id == image_id:
            n_matched += 1

    print(f"Self-matches: {n_matched}/{len(features)}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Train a vocabulary tree of ORB descriptors",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--image-dir",
        type=Path,
        required=True,
        help="Directory with training images (searched recursively)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("data/vocabulary.yml.gz"),
        help="Output vocabulary file (default: data/vocabulary.yml.gz)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML config with a vocabulary section (overrides -k/-L/--weighting/--scoring)",
    )
    parser.add_argument("-k", type=int, default=9, help="Branching factor (default: 9)")
    parser.add_argument("-L", type=int, default=3, help="Tree depth (default: 3)")
    parser.add_argument(
        "--weighting",
        choices=[w.name.lower() for w in WeightingType],
        default="tf_idf",
        help="Word weighting (default: tf_idf)",
    )
    parser.add_argument(
        "--scoring",
        choices=[s.name.lower() for s in ScoringType],
        default="l1_norm",
        help="Scoring metric (default: l1_norm)",
    )
    parser.add_argument(
        "--n-jobs",
        type=int,
        default=1,
        help="Threads for cluster assignment (default: 1)",
    )
    parser.add_argument(
        "--n-features",
        type=int,
        default=500,
        help="ORB features per image (default: 500)",
    )
    parser.add_argument(
        "--max-images",
        type=int,
        default=None,
        help="Max images to process (default: all)",
    )
    parser.add_argument(
        "--skip-every",
        type=int,
        default=1,
        help="Process every Nth image (default: 1)",
    )
    parser.add_argument(
        "--test-database",
        action="store_true",
        help="Query every training image against a database of all of them",
    )
    parser.add_argument("--verbose", action="store_true", help="Show library log messages")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    if not args.image_dir.exists():
        print(f"Error: Image directory not found: {args.image_dir}")
        sys.exit(1)

    if args.config is not None:
        config, _ = load_config(args.config)
    else:
        config = VocabularyConfig(
            branching_factor=args.k,
            depth=args.L,
            weighting=args.weighting,
            scoring=args.scoring,
            n_jobs=args.n_jobs,
        )

    print("=" * 60)
    print("Vocabulary Tree Training")
    print("=" * 60)
    print(f"Image directory: {args.image_dir}")
    print(f"Output file: {args.output}")
    print(f"Branching factor: {config.branching_factor}")
    print(f"Depth: {config.depth}")
    print(f"Weighting: {config.weighting.name}, Scoring: {config.scoring.name}")
    print(f"Features/image: {args.n_features}")
    if args.max_images:
        print(f"Max images: {args.max_images}")
    print()

    features = collect_descriptors(
        args.image_dir,
        n_features=args.n_features,
        max_images=args.max_images,
        skip_every=args.skip_every,
    )

    start_time = time.time()
    vocabulary = VocabularyTree.train(features, config)
    print(f"\nTraining complete in {time.time() - start_time:.1f}s")
    print(vocabulary)

    vocabulary.save(args.output)

    if args.test_database:
        print()
        run_database_check(vocabulary, features)

    print()
    print("=" * 60)
    print(f"Vocabulary saved to: {args.output}")
    print(f"  Words: {vocabulary.n_words}")
    print(f"  Nodes: {vocabulary.n_nodes}")
    print("=" * 60)


if __name__ == "__main__":
    main()
