import math
from pathlib import Path

import numpy as np

from visit_route_ai import master_planner


def build_instance(tmp: Path, n: int = 40) -> None:
    """Write a synthetic instance of ``n`` points on two rings around the depot."""
    rng = np.random.default_rng(7)
    coords = [(0.0, 0.0)]
    rows = ["id,name,lat,lng,category,extra_activities"]
    for i in range(1, n + 1):
        radius = 60.0 if i % 2 else 180.0
        angle = 2 * math.pi * i / n
        x, y = radius * math.cos(angle), radius * math.sin(angle)
        coords.append((x, y))
        category = "OC" if i % 5 == 0 else "PC"
        rows.append(f"{i},P{i},{y / 111.0:.5f},{x / 111.0:.5f},{category},{int(rng.integers(0, 2))}")
    (tmp / "points.csv").write_text("\n".join(rows) + "\n")

    pts = np.array(coords)
    dist = np.sqrt(((pts[:, None, :] - pts[None, :, :]) ** 2).sum(axis=-1))
    dur = dist * 1.2
    np.savetxt(tmp / "distances.csv", np.round(dist, 1), delimiter=",", fmt="%.1f")
    np.savetxt(tmp / "durations.csv", np.round(dur, 1), delimiter=",", fmt="%.1f")


def main() -> None:
    tmp = Path("prof_tmp")
    tmp.mkdir(exist_ok=True)
    build_instance(tmp)
    master_planner.main(
        [
            "--points",
            str(tmp / "points.csv"),
            "--distances",
            str(tmp / "distances.csv"),
            "--durations",
            str(tmp / "durations.csv"),
            "--search-pool-size",
            "7",
            "--workers",
            "2",
            "--output",
            str(tmp / "plan.json"),
            "--review",
        ]
    )

if __name__ == "__main__":
    main()
