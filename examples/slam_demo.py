#!/usr/bin/env python3
"""Demo script for monocular SLAM with loop closure and meshing.

This demo runs the complete pipeline on a EuRoC sequence:
- Tracking: feature matching + PnP against the local map (real time)
- Local Mapping: windowed bundle adjustment after each keyframe (worker)
- Loop Closure: place recognition + pose graph optimization (worker)
- Dense: TSDF fusion of the sparse map into a textured mesh (on exit)

Results are written to output/ as PLY files.

Usage:
    python examples/slam_demo.py
    python examples/slam_demo.py --config configs/slam.yaml --no-viz

Requirements:
    - EuRoC dataset at data/euroc/MH_01_easy/mav0
    - Optional pretrained vocabulary at data/vocabulary.npz
      (python scripts/train_vocabulary.py)
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from recon3d import DatasetReader, FrameStatus, SLAMConfig, SLAMSystem
from recon3d.io import write_mesh_ply, write_point_cloud_ply


def main() -> None:
    """Run SLAM on a sequence and export the map and mesh."""
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--dataset", default="data/euroc/MH_01_easy/mav0")
    parser.add_argument("--config", type=Path, default=None, help="YAML configuration")
    parser.add_argument("--vocabulary", type=Path, default=Path("data/vocabulary.npz"))
    parser.add_argument("--max-frames", type=int, default=None)
    parser.add_argument("--output", type=Path, default=Path("output"))
    parser.add_argument("--no-viz", action="store_true", help="Disable the Rerun viewer")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = SLAMConfig.from_yaml(args.config) if args.config else SLAMConfig()
    reader = DatasetReader(args.dataset, undistort=True)
    vocabulary_path = args.vocabulary if args.vocabulary.exists() else None

    visualizer = None
    if not args.no_viz:
        # rerun-sdk is only needed for the viewer (viz extra)
        from recon3d.visualization import RerunVisualizer

        visualizer = RerunVisualizer("recon3d", intrinsics=reader.intrinsics)

    print(f"Processing {len(reader)} frames...")
    print(f"  Loop closure vocabulary: {vocabulary_path or 'trained online'}")
    print()
    print(f"{'Frame':>6} {'Status':^22} {'Inlr':>5} {'KF':>3} {'Map':>6} | {'Position'}")
    print("-" * 80)

    with SLAMSystem.from_dataset(reader, config, vocabulary_path) as slam:
        for i, frame in enumerate(reader):
            if args.max_frames is not None and i >= args.max_frames:
                break

            result = slam.process_frame(frame)

            if visualizer is not None and i % 5 == 0:
                visualizer.log_frame(frame, result)
                visualizer.log_point_cloud(slam.export_point_cloud())

            should_print = (
                i % 20 == 0 or result.is_keyframe or result.status != FrameStatus.TRACKED
            )
            if should_print:
                pos = result.pose.position if result.pose is not None else None
                pos_text = (
                    f"[{pos[0]:7.2f}, {pos[1]:7.2f}, {pos[2]:7.2f}]" if pos is not None else "-"
                )
                print(
                    f"{i:6d} {result.status.value:^22} {result.num_inliers:5d} "
                    f"{'*' if result.is_keyframe else ' ':>3} {slam.map.num_points:6d} | "
                    f"{pos_text}"
                )

        slam.wait_for_background(timeout=30.0)
        cloud = slam.export_point_cloud()
        mesh = slam.build_mesh(wait=True, timeout=120.0)
        stats = slam.get_stats()

    args.output.mkdir(parents=True, exist_ok=True)
    write_point_cloud_ply(cloud, args.output / "map.ply")
    if mesh is not None and mesh.num_triangles > 0:
        write_mesh_ply(mesh, args.output / "mesh.ply")
        if visualizer is not None:
            visualizer.log_mesh(mesh)

    print()
    print("=" * 80)
    print("SLAM SUMMARY")
    print("=" * 80)
    print(f"Frames processed:   {stats.num_frames} ({stats.num_tracked} tracked)")
    print(f"Keyframes:          {stats.num_keyframes}")
    print(f"Map points:         {stats.num_map_points}")
    print(f"BA corrections:     {stats.num_ba_applied} applied, {stats.num_ba_discarded} stale")
    print(f"Loop closures:      {stats.num_loop_closures}")
    print(f"Distance traveled:  {stats.total_distance:.2f}")
    print(f"Tracking rate:      {stats.mean_fps:.1f} Hz")
    if mesh is not None:
        print(f"Mesh:               {mesh.num_vertices} vertices, {mesh.num_triangles} triangles")
    print(f"Output written to:  {args.output}")


if __name__ == "__main__":
    main()
