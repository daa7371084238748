from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import nibabel as nb
import torch
from dipy.segment.mask import median_otsu

from ukfpy.core.utils import MIN_POSITIVE_SIGNAL
from ukfpy.core.validation import DataError


def auto_mask_output_path(dwi_path: str) -> str:
    """Return the output path for an auto-generated mask.

    If the input DWI is called "dwi.nii.gz" or "dwi.nii", the mask is saved as
    "dwi_auto_mask.nii.gz" in the same directory as the DWI.
    """

    p = Path(dwi_path)
    name = p.name

    if name.lower().endswith(".nii.gz"):
        stem = name[:-7]
    elif name.lower().endswith(".nii"):
        stem = name[:-4]
    else:
        stem = p.stem

    return str(p.with_name(f"{stem}_auto_mask.nii.gz"))


def save_auto_mask_nifti(mask: np.ndarray, *, dwi_path: str, affine: Any, header: Any) -> str:
    """Save an auto-generated 3D mask NIfTI next to the input DWI and return its path."""

    out_path = auto_mask_output_path(dwi_path)

    hdr = header.copy() if header is not None else None
    if hdr is not None:
        hdr.set_data_dtype(np.uint8)
        hdr.set_data_shape(mask.shape)

    img = nb.Nifti1Image((mask > 0).astype(np.uint8), affine, header=hdr)
    nb.save(img, out_path)
    return out_path


def load_dwi_nifti(dwi_path: str) -> tuple[np.ndarray, Any, Any]:
    """Load a DWI NIfTI and return (data, header, affine).

    - uses `get_fdata()` (float64)
    - clips to `MIN_POSITIVE_SIGNAL`
    - expands 2D/3D to 4D by inserting a singleton z-dimension
    """

    dwi_nifti = nb.load(dwi_path)
    dwi = np.clip(dwi_nifti.get_fdata(), a_min=MIN_POSITIVE_SIGNAL, a_max=None)

    if dwi.ndim < 4:
        dwi = np.expand_dims(dwi, axis=2)

    return dwi, dwi_nifti.header, dwi_nifti.affine


def load_bvals_bvecs(bval_path: str, bvec_path: str) -> tuple[torch.Tensor, torch.Tensor]:
    """Load bvals/bvecs from text files and return (bvals, bvecs).

    - tries whitespace first, then comma-delimited
    - accepts bvecs as 3xN or Nx3 and returns Nx3
    - normalizes bvecs row-wise; all-zero rows (b0) stay zero
    """

    try:
        bval_data = np.loadtxt(bval_path)
    except ValueError:
        bval_data = np.loadtxt(bval_path, delimiter=",")
    bvals = torch.from_numpy(np.atleast_1d(bval_data)).double()

    try:
        bvec_data = np.loadtxt(bvec_path)
    except ValueError:
        bvec_data = np.loadtxt(bvec_path, delimiter=",")
    bvec_tensor = torch.from_numpy(np.atleast_2d(bvec_data)).double()

    # Transpose if bvecs are in 3xN (FSL) format.
    if bvec_tensor.shape[0] == 3 and bvec_tensor.shape[1] == bvals.shape[0]:
        bvecs = bvec_tensor.T
    else:
        bvecs = bvec_tensor

    norms = torch.linalg.norm(bvecs, dim=1)
    norms = torch.where(norms > 0, norms, torch.ones_like(norms))
    bvecs = bvecs / norms[:, None]

    if bvals.shape[0] != bvecs.shape[0]:
        raise DataError(
            f"b-values and b-vectors disagree on the number of volumes: {bvals.shape[0]} vs {bvecs.shape[0]}.\n"
            f"Action: Check the .bval/.bvec files against the DWI."
        )

    return bvals, bvecs


def load_mask(
    mask_path: str,
    *,
    dwi: np.ndarray,
    bvals: torch.Tensor,
) -> tuple[np.ndarray, str]:
    """Load or generate the brain mask used for seeding and stopping.

    Returns (mask, mask_source) where mask_source is one of:
    auto | file | non_trivial_signal
    """

    non_trivial_signal_mask = ~(dwi <= MIN_POSITIVE_SIGNAL).all(axis=3)

    if mask_path == 'auto':
        b0_idx = np.flatnonzero(bvals.numpy() < 50)
        _, mask = median_otsu(
            dwi,
            median_radius=4,
            numpass=4,
            vol_idx=b0_idx if b0_idx.size else np.arange(int(bvals.shape[0])),
            dilate=3,
        )
        return np.logical_and(mask, non_trivial_signal_mask), 'auto'

    if mask_path and os.path.exists(mask_path):
        mask = load_scalar_volume(mask_path, dwi.shape[:3], name='Mask') > 0
        return mask, 'file'

    return non_trivial_signal_mask, 'non_trivial_signal'


def load_scalar_volume(path: str, spatial_shape: Sequence[int], *, name: str) -> np.ndarray:
    """Load a 3D NIfTI (seeds, labels, CSF) and check it matches the DWI grid."""
    data = np.asarray(nb.load(path).get_fdata())
    if data.ndim == 4 and data.shape[3] == 1:
        data = data[..., 0]
    if data.ndim == 2:
        data = data[:, :, None]
    if tuple(data.shape) != tuple(int(s) for s in spatial_shape):
        raise DataError(
            f"{name} volume shape {tuple(data.shape)} does not match the DWI grid {tuple(spatial_shape)}.\n"
            f"File: {path}\n"
            f"Action: Resample the {name.lower()} volume into DWI space."
        )
    return data


TRK_FIELD_GROUPS: Dict[str, Sequence[str]] = {
    'rtop': ('rtop_model', 'rtop_signal', 'rtop1', 'rtop2', 'rtop3'),
    'weights': ('w1', 'w2', 'w3', 'w_iso'),
    'angles': ('angle_12', 'angle_13'),
    'uncertainty': ('Fm1', 'lmd1', 'Fm2', 'lmd2', 'Fm3', 'lmd3', 'varW1', 'varW2', 'varW3', 'varWiso'),
}


def pack_fiber_fields(fiber: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
    """Per-point arrays of one fiber with related scalars stacked as columns.

    TrackVis stores at most 10 named per-point fields; each group in
    ``TRK_FIELD_GROUPS`` becomes one (n, k) entry with its columns in the
    listed order. Groups are only formed when every member is present.
    """
    n = len(fiber['position'])
    packed: Dict[str, np.ndarray] = {}
    grouped = set()
    for group, members in TRK_FIELD_GROUPS.items():
        if all(m in fiber for m in members):
            packed[group] = np.column_stack([np.asarray(fiber[m]).reshape(n) for m in members])
            grouped.update(members)
    for key, value in fiber.items():
        if key != 'position' and key not in grouped:
            packed[key] = np.asarray(value).reshape(n, -1)
    return packed


def save_fibers(
    fibers: List[Dict[str, np.ndarray]],
    *,
    reference: nb.Nifti1Image,
    output_path: str,
) -> bool:
    """Persist fibers as a TrackVis file through dipy's StatefulTractogram.

    Each fiber is a dict holding ``position`` (n, 3) in voxel coordinates plus
    per-point fields of shape (n,) or (n, k). Returns True on success.
    """
    from dipy.io.stateful_tractogram import Space, StatefulTractogram
    from dipy.io.streamline import save_tractogram

    streamlines = [np.asarray(f['position'], dtype=np.float32) for f in fibers]
    packed = [pack_fiber_fields(f) for f in fibers]

    data_per_point: Dict[str, list] = {}
    if packed:
        for key in packed[0]:
            data_per_point[key] = [np.asarray(p[key], dtype=np.float32) for p in packed]

    try:
        sft = StatefulTractogram(
            streamlines,
            reference,
            Space.VOX,
            data_per_point=data_per_point or None,
        )
        ok = save_tractogram(sft, output_path, bbox_valid_check=False)
    except (OSError, ValueError, TypeError) as e:
        logging.error(f"✗ Failed to write tractogram {output_path}:\n{e}")
        return False

    return ok is not False
