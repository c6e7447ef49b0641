#!/usr/bin/env python3
"""Train a visual vocabulary for loop closure on EuRoC sequences.

This script trains a Bag of Visual Words vocabulary by:
1. Extracting grid-distributed ORB descriptors from cam0 of every sequence
2. Running mini-batch k-means on the unpacked descriptor bits
3. Setting IDF weights from the per-image word occurrences
4. Saving the vocabulary for SLAMSystem.from_dataset(vocabulary_path=...)

Usage:
    python scripts/train_vocabulary.py
    python scripts/train_vocabulary.py --n-words 2000 --max-images 5000
    python scripts/train_vocabulary.py --data-dir /path/to/euroc

Without a pretrained vocabulary the loop closer trains one online from
the first keyframes of each run.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

import cv2
import numpy as np

from recon3d import FeatureExtractor
from recon3d.config import FeatureConfig
from recon3d.loop_closure import VisualVocabulary


def collect_descriptors(
    data_dir: Path,
    n_features: int = 500,
    max_images: int | None = None,
    skip_every: int = 1,
) -> list[np.ndarray]:
    """Extract ORB descriptors from all EuRoC sequences under data_dir.

    Returns:
        One (N, 32) uint8 descriptor array per image
    """
    extractor = FeatureExtractor(FeatureConfig(n_features=n_features))
    per_image: list[np.ndarray] = []

    for sequence_dir in sorted(p for p in data_dir.iterdir() if p.is_dir()):
        cam0_dir = sequence_dir / "mav0" / "cam0" / "data"
        if not cam0_dir.exists():
            continue

        print(f"Processing {sequence_dir.name}...", end=" ", flush=True)
        seq_count = 0
        for i, img_path in enumerate(sorted(cam0_dir.glob("*.png"))):
            if max_images and len(per_image) >= max_images:
                break
            if i % skip_every != 0:
                continue
            image = cv2.imread(str(img_path), cv2.IMREAD_GRAYSCALE)
            if image is None:
                continue
            features = extractor.extract(image)
            if len(features) > 0:
                per_image.append(features.descriptors)
                seq_count += 1
        print(f"{seq_count} images")

        if max_images and len(per_image) >= max_images:
            print(f"Reached max_images limit ({max_images})")
            break

    return per_image


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Train visual vocabulary for loop closure",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--data-dir", type=Path, default=Path("data/euroc"))
    parser.add_argument("--output", type=Path, default=Path("data/vocabulary.npz"))
    parser.add_argument("--n-words", type=int, default=1000, help="Visual words")
    parser.add_argument("--n-features", type=int, default=500, help="ORB features per image")
    parser.add_argument("--max-images", type=int, default=None)
    parser.add_argument("--skip-every", type=int, default=3, help="Use every Nth image")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if not args.data_dir.exists():
        print(f"Error: Data directory not found: {args.data_dir}")
        print("Please download EuRoC dataset sequences to this directory.")
        sys.exit(1)

    per_image = collect_descriptors(
        args.data_dir,
        n_features=args.n_features,
        max_images=args.max_images,
        skip_every=args.skip_every,
    )
    if not per_image:
        print(f"Error: No descriptors found in {args.data_dir}")
        sys.exit(1)

    descriptors = np.vstack(per_image)
    print(f"\nTraining {args.n_words} words on {len(descriptors)} descriptors...")
    start_time = time.time()
    vocabulary = VisualVocabulary.train(descriptors, args.n_words)

    # Document frequency of each word over the training images
    df = np.zeros(vocabulary.n_words, dtype=np.int64)
    for image_descriptors in per_image:
        df[np.unique(vocabulary.assign(image_descriptors))] += 1
    vocabulary.update_idf(df, len(per_image))
    print(f"Training complete in {time.time() - start_time:.1f}s")

    vocabulary.save(args.output)
    print(f"Vocabulary saved to: {args.output} ({vocabulary.n_words} words)")


if __name__ == "__main__":
    main()
