# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
#
# This file implements the gnuplot frame dump used to render movies of a run.
#
# ===--------------------------------------------------------------------------------------===#

import pathlib
from typing import Optional

from circlesim.circles import CircleSet
from circlesim.config import Bounds

FRAME_PREFIX: str = "circles"


def frame_path(frames_dir: str | pathlib.Path, iterno: int, suffix: str = ".gp") -> pathlib.Path:
    return pathlib.Path(frames_dir).joinpath(f"{FRAME_PREFIX}-{iterno:05d}{suffix}")


def dump_circles(
    circles: CircleSet,
    iterno: int,
    frames_dir: str | pathlib.Path,
    bounds: Optional[Bounds] = None,
) -> pathlib.Path:
    """Writes a gnuplot script drawing every circle of the set.

    Running ``gnuplot`` on the script produces ``circles-XXXXX.png`` in the working
    directory; the frames can then be assembled into a movie, e.g. with
    ``ffmpeg -i circles-%05d.png circles.avi``.

    Args:
        circles: Circle set to draw.
        iterno: Iteration number, used in the file names.
        frames_dir: Directory receiving the script. Created if missing.
        bounds: Placement bounds; the plot range pads them by 20% on each side.

    Returns:
        Path of the written script.
    """
    bounds = bounds if bounds is not None else Bounds()
    frames_dir = pathlib.Path(frames_dir)
    frames_dir.mkdir(parents=True, exist_ok=True)

    width: float = bounds.xmax - bounds.xmin
    height: float = bounds.ymax - bounds.ymin
    path: pathlib.Path = frame_path(frames_dir, iterno)
    with open(path, "w") as out:
        out.write("set term png notransparent large\n")
        out.write(f'set output "{frame_path("", iterno, ".png")}"\n')
        out.write(f"set xrange [{bounds.xmin - width * 0.2:f}:{bounds.xmax + width * 0.2:f}]\n")
        out.write(f"set yrange [{bounds.ymin - height * 0.2:f}:{bounds.ymax + height * 0.2:f}]\n")
        out.write("set size square\n")
        out.write("plot '-' with circles notitle\n")
        for x, y, r in zip(circles.x.tolist(), circles.y.tolist(), circles.r.tolist()):
            out.write(f"{x:f} {y:f} {r:f}\n")
        out.write("e\n")
    return path
