"""Reading and writing point clouds (.bin, .pcd, .ply) and small helpers for registration runs."""

from __future__ import annotations

import math
from pathlib import Path

import numpy as np

_PCD_TYPES = {
    ("F", 4): "f4",
    ("F", 8): "f8",
    ("I", 1): "i1",
    ("I", 2): "i2",
    ("I", 4): "i4",
    ("I", 8): "i8",
    ("U", 1): "u1",
    ("U", 2): "u2",
    ("U", 4): "u4",
    ("U", 8): "u8",
}

_PLY_TYPES = {
    "char": "i1",
    "int8": "i1",
    "uchar": "u1",
    "uint8": "u1",
    "short": "i2",
    "int16": "i2",
    "ushort": "u2",
    "uint16": "u2",
    "int": "i4",
    "int32": "i4",
    "uint": "u4",
    "uint32": "u4",
    "float": "f4",
    "float32": "f4",
    "double": "f8",
    "float64": "f8",
}


def read_bin(path) -> np.ndarray:
    """Read a KITTI-style .bin scan of float32 (x, y, z, intensity) records; return xyz."""
    data = Path(path).read_bytes()
    num_points = len(data) // 16
    records = np.frombuffer(data, dtype="<f4", count=num_points * 4).reshape(num_points, 4)
    return records[:, :3].astype(float)


def _header_lines(data: bytes, terminator):
    """Yield (stripped line, offset after the line) until ``terminator(line)`` is true."""
    pos = 0
    while pos < len(data):
        end = data.find(b"\n", pos)
        if end < 0:
            end = len(data)
        line = data[pos:end].decode("ascii", "replace").strip()
        pos = end + 1
        yield line, pos
        if terminator(line):
            return
    raise ValueError("unexpected end of header")


def read_pcd(path) -> np.ndarray:
    """Read x, y, z from an ascii or binary PCD file."""
    data = Path(path).read_bytes()
    header: dict[str, list[str]] = {}
    body_start = 0
    for line, offset in _header_lines(data, lambda text: text.upper().startswith("DATA")):
        if not line or line.startswith("#"):
            continue
        key, *values = line.split()
        header[key.upper()] = values
        body_start = offset
    fields = header.get("FIELDS", [])
    if not {"x", "y", "z"} <= set(fields):
        raise ValueError("PCD file has no x, y, z fields")
    counts = [int(c) for c in header.get("COUNT", ["1"] * len(fields))]
    if "POINTS" in header:
        num_points = int(header["POINTS"][0])
    else:
        num_points = int(header["WIDTH"][0]) * int(header.get("HEIGHT", ["1"])[0])
    mode = header["DATA"][0].lower()
    body = data[body_start:]

    if mode == "ascii":
        offsets = np.cumsum([0] + counts[:-1])
        columns = [int(offsets[fields.index(axis)]) for axis in "xyz"]
        rows = [line.split() for line in body.decode("ascii").splitlines() if line.strip()]
        rows = rows[:num_points]
        if not rows:
            return np.empty((0, 3))
        return np.array([[float(row[c]) for c in columns] for row in rows])

    if mode == "binary":
        sizes = [int(s) for s in header["SIZE"]]
        types = [t.upper() for t in header["TYPE"]]
        dtype = np.dtype(
            [
                (f"f{i}", "<" + _PCD_TYPES[(t, s)], (c,) if c > 1 else ())
                for i, (t, s, c) in enumerate(zip(types, sizes, counts))
            ]
        )
        records = np.frombuffer(body, dtype=dtype, count=num_points)
        return np.column_stack(
            [records[f"f{fields.index(axis)}"].astype(float) for axis in "xyz"]
        ).reshape(-1, 3)

    raise ValueError(f"Unsupported PCD data format: {mode}")


def read_ply(path) -> np.ndarray:
    """Read the x, y, z vertex coordinates of an ascii or binary PLY file."""
    data = Path(path).read_bytes()
    elements: list[tuple[str, int, list[tuple[str, str | None]]]] = []
    fmt = None
    body_start = 0
    for line, offset in _header_lines(data, lambda text: text == "end_header"):
        body_start = offset
        parts = line.split()
        if not parts:
            continue
        if parts[0] == "format":
            fmt = parts[1]
        elif parts[0] == "element":
            elements.append((parts[1], int(parts[2]), []))
        elif parts[0] == "property" and elements:
            if parts[1] == "list":
                elements[-1][2].append((parts[4], None))
            else:
                elements[-1][2].append((parts[2], _PLY_TYPES[parts[1]]))
    if not data.startswith(b"ply"):
        raise ValueError("not a PLY file")
    body = data[body_start:]

    vertex_pos = next((i for i, e in enumerate(elements) if e[0] == "vertex"), None)
    if vertex_pos is None:
        raise ValueError("PLY file has no vertex element")
    _, num_vertices, props = elements[vertex_pos]
    names = [name for name, _ in props]
    if not {"x", "y", "z"} <= set(names):
        raise ValueError("PLY vertices have no x, y, z properties")
    if any(kind is None for _, kind in props):
        raise ValueError("list properties in PLY vertices are not supported")

    if fmt == "ascii":
        lines = [line for line in body.decode("ascii").splitlines() if line.strip()]
        skip = sum(count for _, count, _ in elements[:vertex_pos])
        rows = [line.split() for line in lines[skip : skip + num_vertices]]
        if not rows:
            return np.empty((0, 3))
        columns = [names.index(axis) for axis in "xyz"]
        return np.array([[float(row[c]) for c in columns] for row in rows])

    if fmt in ("binary_little_endian", "binary_big_endian"):
        order = "<" if fmt == "binary_little_endian" else ">"
        skip_bytes = 0
        for _, count, element_props in elements[:vertex_pos]:
            if any(kind is None for _, kind in element_props):
                raise ValueError("list properties before PLY vertices are not supported")
            skip_bytes += count * sum(np.dtype(kind).itemsize for _, kind in element_props)
        dtype = np.dtype([(f"p{i}", order + kind) for i, (_, kind) in enumerate(props)])
        records = np.frombuffer(body, dtype=dtype, count=num_vertices, offset=skip_bytes)
        return np.column_stack(
            [records[f"p{names.index(axis)}"].astype(float) for axis in "xyz"]
        ).reshape(-1, 3)

    raise ValueError(f"Unsupported PLY format: {fmt}")


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "nan"
    return f"{value:.8g}"


def write_pcd_ascii(path, points) -> None:
    """Write an (N, 3) xyz or (N, 4) xyz-intensity cloud as an ascii PCD file."""
    pts = np.asarray(points, dtype=float)
    if pts.size == 0:
        pts = pts.reshape(0, 3)
    if pts.ndim != 2 or pts.shape[1] not in (3, 4):
        raise ValueError("points must have 3 (xyz) or 4 (xyz + intensity) columns")
    fields = ["x", "y", "z", "intensity"][: pts.shape[1]]
    n = len(pts)
    header = [
        "# .PCD v0.7 - Point Cloud Data file format",
        "VERSION 0.7",
        "FIELDS " + " ".join(fields),
        "SIZE " + " ".join("4" for _ in fields),
        "TYPE " + " ".join("F" for _ in fields),
        "COUNT " + " ".join("1" for _ in fields),
        f"WIDTH {n}",
        "HEIGHT 1",
        "VIEWPOINT 0 0 0 1 0 0 0",
        f"POINTS {n}",
        "DATA ascii",
    ]
    body = [" ".join(_format_value(v) for v in row) for row in pts]
    Path(path).write_text("\n".join(header + body) + "\n", encoding="ascii")


def load_point_cloud(path) -> np.ndarray:
    """Load a cloud by file extension: .pcd, .ply or .bin."""
    extension = Path(path).suffix
    if extension == ".pcd":
        return read_pcd(path)
    if extension == ".ply":
        return read_ply(path)
    if extension == ".bin":
        return read_bin(path)
    raise ValueError(f"Unsupported file format: {extension}")


def colorize(points, color) -> np.ndarray:
    """Return an (N, 6) array of x, y, z, r, g, b with every point given ``color``."""
    rgb = [int(c) for c in color]
    if len(rgb) != 3 or not all(0 <= c <= 255 for c in rgb):
        raise ValueError("color must be three values in 0..255")
    pts = np.asarray(points, dtype=float)
    if pts.size == 0:
        return np.empty((0, 6))
    xyz = pts[:, :3]
    return np.hstack([xyz, np.tile(np.array(rgb, dtype=float), (len(xyz), 1))])


def warped_output_path(source_path) -> Path:
    """Path next to the source cloud where the transformed source is saved."""
    src = Path(source_path)
    return src.parent / f"{src.stem}_warped.pcd"


def augmentation_rotation(yaw_deg: float = 0.0, roll_deg: float = 0.0) -> np.ndarray:
    """4x4 rotation applying a roll about x, then a yaw about z (angles in degrees)."""
    yaw = math.radians(yaw_deg)
    roll = math.radians(roll_deg)
    yaw_transform = np.eye(4)
    yaw_transform[0, 0] = math.cos(yaw)
    yaw_transform[0, 1] = -math.sin(yaw)
    yaw_transform[1, 0] = math.sin(yaw)
    yaw_transform[1, 1] = math.cos(yaw)
    roll_transform = np.eye(4)
    roll_transform[1, 1] = math.cos(roll)
    roll_transform[1, 2] = -math.sin(roll)
    roll_transform[2, 1] = math.sin(roll)
    roll_transform[2, 2] = math.cos(roll)
    return yaw_transform @ roll_transform