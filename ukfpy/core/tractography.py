from __future__ import annotations

import configparser
import importlib
import logging
import os
import platform
import shlex
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Type

import nibabel as nb
import numpy as np
import torch

from ukfpy._version import __version__
from ukfpy.core.configuration import configuration
from ukfpy.core.io import (
    load_bvals_bvecs,
    load_dwi_nifti,
    load_mask,
    load_scalar_volume,
    save_auto_mask_nifti,
    save_fibers,
)
from ukfpy.core.logfmt import DETAIL, STATUS, level_for_output_mode, log_banner, log_section
from ukfpy.core.progress import set_progress_enabled
from ukfpy.core.utils import sanitize_run_tag
from ukfpy.core.validation import DataError, SeedError, validate_tensor
from ukfpy.filter.ukf import FilterModel
from ukfpy.tracking.orchestrator import resolve_num_threads, track_fibers
from ukfpy.tracking.propagator import TrackingSettings
from ukfpy.tracking.seeding import generate_seeds
from ukfpy.tracking.signal import VolumeSignal


class _UKFFormatter(logging.Formatter):
    """Consistent, readable console/file formatting.

    - INFO:    "UKF: <message>"
    - WARNING: "UKF [WARNING]: <message>"
    - ERROR:   "UKF [ERROR]: <message>"
    """

    def format(self, record: logging.LogRecord) -> str:
        prefix = "UKF"
        if record.levelno == logging.INFO:
            return f"{prefix}: {record.getMessage()}"
        return f"{prefix} [{record.levelname}]: {record.getMessage()}"


class UKFTractography:
    def __init__(self, cfg_file: Type[configparser.ConfigParser]) -> None:
        self.configuration = configuration(cfg_file)
        self.fibers = []
        self.seeds = []
        self._total_runtime_s: float | None = None
        self.configure_logging()

    def _configure_reproducibility(self) -> None:
        """Seed the jitter generator from [TRACKING] random_seed.

        UKFPY_SEED, when set, is applied to numpy and torch as well.
        """
        seed_env = os.environ.get('UKFPY_SEED', None)
        if seed_env is not None and str(seed_env).strip() != '':
            seed_val = int(str(seed_env).strip())
            np.random.seed(seed_val)
            torch.manual_seed(seed_val)
            logging.log(DETAIL, f"UKFPY_SEED={seed_val} applied to numpy and torch")
        self.rng = np.random.default_rng(int(self.configuration.random_seed))

    @staticmethod
    def _safe_version(mod_name: str) -> str:
        mod = importlib.import_module(mod_name)
        return getattr(mod, '__version__', 'unknown')

    def _write_final_config_snapshot(self) -> None:
        cfg = self.configuration.cfg_file
        c = self.configuration

        for section in ['INPUT', 'OUTPUT', 'TRACKING', 'FILTER', 'DEBUG', 'DEVICE']:
            if not cfg.has_section(section):
                cfg.add_section(section)

        cfg.set('INPUT', 'mask_file', str(c.mask_path))
        cfg.set('INPUT', 'labels', ', '.join(str(v) for v in c.labels))
        cfg.set('INPUT', 'sigma_signal', str(c.sigma_signal))
        for key in ('step_length', 'record_length', 'max_half_fiber_length', 'seeds_per_voxel', 'min_radius',
                    'max_nmse', 'max_ukf_iterations', 'fw_thresh', 'rtop1_min_stop', 'seeding_threshold',
                    'max_odf_threshold', 'random_seed'):
            cfg.set('TRACKING', key, str(getattr(c, key)))
        for key in ('p0', 'qm', 'ql', 'qw', 'qwiso', 'rs', 'sigma_point_spread'):
            cfg.set('FILTER', key, str(getattr(c, key)))
        cfg.set('OUTPUT', 'output_file', str(c.output_file))
        for key, value in c.TRACKING_ARGS.items():
            if key.startswith('record_') and key != 'record_length':
                cfg.set('OUTPUT', key, str(bool(value)))
        cfg.set('DEBUG', 'output_mode', str(c.output_mode))
        cfg.set('DEVICE', 'num_threads', str(c.num_threads))

        snapshot_path = os.path.join(self.save_dir, 'config_final.ini')
        with open(snapshot_path, 'w', encoding='utf-8') as f:
            cfg.write(f)

        logging.info(f"Config snapshot saved: {os.path.basename(snapshot_path)}")

    def _log_verbose_runtime_environment(self) -> None:
        log_section('Runtime Environment')
        logging.info(f"  UKFpy Version    : {__version__}")
        logging.info(f"  Python           : {sys.version.split()[0]}")
        logging.info(f"  Platform         : {platform.platform()}")
        logging.info(f"  NumPy            : {self._safe_version('numpy')}")
        logging.info(f"  SciPy            : {self._safe_version('scipy')}")
        logging.info(f"  PyTorch          : {self._safe_version('torch')}")
        logging.info(f"  NiBabel          : {self._safe_version('nibabel')}")
        logging.info(f"  DIPY             : {self._safe_version('dipy')}")
        logging.info(f"  Working Dir      : {os.getcwd()}")
        logging.info(f"  Command          : {shlex.join(sys.argv)}")
        logging.info(f"  Threads          : {self.configuration.num_threads}")

    def configure_logging(self) -> None:
        c = self.configuration
        stamp = datetime.now().strftime('%Y%m%d_%H%M')

        base_dir = Path(c.save_dir)
        if not base_dir.is_absolute():
            cfg_source = c.cfg_file.get('DEBUG', 'cfg_source', fallback=None)
            root = Path(str(cfg_source)).resolve().parent if cfg_source else Path.cwd()
            base_dir = root / base_dir

        run_tag = sanitize_run_tag(c.run_tag)
        prefix = f"{stamp}_" + (f"{run_tag}_" if run_tag else "")
        self.save_dir = str(base_dir / f'{prefix}UKF_Results')
        os.makedirs(self.save_dir, exist_ok=True)

        #### Configure Log File ####
        log_file = os.path.join(self.save_dir, 'log')
        level = level_for_output_mode(c.output_mode)

        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(min(level, logging.INFO))
        file_handler.setFormatter(_UKFFormatter())

        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(_UKFFormatter())

        logging.basicConfig(
            level=min(level, logging.INFO),
            handlers=[file_handler, console_handler],
            force=True,
        )
        set_progress_enabled(c.output_mode != 'quiet')

        self._write_final_config_snapshot()

        if c.verbose_flag:
            self._log_verbose_runtime_environment()

        log_banner('Input Parameters')
        log_section('Input Files')
        logging.info(f"  DWI File     : {os.path.split(c.dwi_path)[1]}")
        logging.info(f"  Mask File    : {os.path.split(c.mask_path)[1] if c.mask_path else '<signal mask>'}")
        logging.info(f"  B-value File : {os.path.split(c.bval_path)[1]}")
        logging.info(f"  B-vector File: {os.path.split(c.bvec_path)[1]}")
        logging.info(f"  Seeds File   : {os.path.split(c.seeds_path)[1] if c.seeds_path else '<whole brain>'}")
        if c.csf_path:
            logging.info(f"  CSF File     : {os.path.split(c.csf_path)[1]}")
        logging.info(
            f"  Run Config   : seeds_per_voxel={c.seeds_per_voxel}, step_length={c.step_length} mm, "
            f"record_length={c.record_length} mm, threads={c.num_threads}"
        )
        if c.verbose_flag:
            log_section('Stopping Criteria')
            logging.info(f"  Min. Curvature Radius : {c.min_radius} mm")
            logging.info(f"  Max. NMSE             : {c.max_nmse}")
            logging.info(f"  Free-Water Ceiling    : {c.fw_thresh}")
            logging.info(f"  RTOP1 Floor           : {c.rtop1_min_stop}")
            logging.info(f"  Max. Half-Fiber Length: {c.max_half_fiber_length} mm")
            log_section('Filter Parameters')
            for key, value in c.FILTER_ARGS.items():
                logging.info(f"  {key:<6}: {value}")
            logging.info(f"  p0    : {c.p0}")

    def load(self) -> None:
        c = self.configuration

        dwi, self.header, self.affine = load_dwi_nifti(c.dwi_path)
        self.zooms = tuple(float(z) for z in self.header.get_zooms()[:3])
        bvals, bvecs = load_bvals_bvecs(c.bval_path, c.bvec_path)

        if bvals.shape[0] != dwi.shape[3]:
            raise DataError(
                f"The DWI has {dwi.shape[3]} volumes but {bvals.shape[0]} b-values were loaded.\n"
                f"Action: Check that the .bval/.bvec files belong to {os.path.basename(c.dwi_path)}."
            )
        logging.info(
            f"Loaded DWI: shape={dwi.shape[0]} x {dwi.shape[1]} x {dwi.shape[2]} x {dwi.shape[3]}, "
            f"volumes={len(bvals)}, voxel={self.zooms[0]:g} x {self.zooms[1]:g} x {self.zooms[2]:g} mm"
        )

        try:
            validate_tensor(dwi, "DWI signal", allow_negative=False, allow_inf=False)
        except DataError as e:
            logging.error(f"✗ DWI data validation failed:\n{e}")
            raise

        mask, mask_source = load_mask(c.mask_path, dwi=dwi, bvals=bvals)
        if str(c.mask_path).strip().lower() == 'auto' and mask_source == 'auto':
            try:
                out_mask = save_auto_mask_nifti(mask, dwi_path=c.dwi_path, affine=self.affine, header=self.header)
                logging.info(f"Auto mask saved: {out_mask}")
            except OSError as e:
                logging.warning(f"Could not save auto mask next to DWI: {e}")
        logging.info(f"Mask applied: source={mask_source}, brain_voxels={int(np.count_nonzero(mask)):,}")

        csf = load_scalar_volume(c.csf_path, dwi.shape[:3], name='CSF') if c.csf_path else None

        self.source = VolumeSignal(
            dwi,
            bvals.numpy(),
            bvecs.numpy(),
            mask.astype(np.float64),
            self.zooms,
            csf=csf,
            sigma_signal=c.sigma_signal,
        )
        self.reference = nb.Nifti1Image(np.zeros(dwi.shape[:3], dtype=np.uint8), self.affine, header=self.header)

        if c.seeds_path:
            seeds = load_scalar_volume(c.seeds_path, dwi.shape[:3], name='Seeds')
            self.seed_voxels = np.argwhere(np.isin(np.rint(seeds).astype(int), c.labels))
            logging.info(f"Seed region: {len(self.seed_voxels):,} voxels with labels {c.labels}")
        else:
            self.seed_voxels = np.argwhere(mask > 0)
            logging.info(f"Whole-brain seeding: {len(self.seed_voxels):,} voxels")

        if len(self.seed_voxels) == 0:
            raise SeedError(
                "No seed voxels found.\n"
                "Action: Verify the seeds file and [INPUT] labels, or the brain mask for whole-brain seeding."
            )

    def calc(self) -> None:
        c = self.configuration
        log_banner('Seeding')
        self.seeds = generate_seeds(
            self.source,
            self.seed_voxels,
            seeds_per_voxel=c.seeds_per_voxel,
            rng=self.rng,
            seeding_threshold=c.seeding_threshold,
            max_odf_threshold=c.max_odf_threshold,
            from_seed_file=bool(c.seeds_path),
            p0=c.p0,
            num_threads=resolve_num_threads(c.num_threads, len(self.seed_voxels)),
        )

        log_banner('Tracking')
        model = FilterModel(self.source.gradients, self.source.b_values, **c.FILTER_ARGS)
        settings = TrackingSettings(**c.TRACKING_ARGS)
        self.fibers = track_fibers(self.source, self.seeds, model, settings, num_threads=c.num_threads)

    def save(self) -> None:
        output_path = os.path.join(self.save_dir, self.configuration.output_file)
        logging.info(f'Saving {len(self.fibers):,} fibers to: {output_path}')
        ok = save_fibers([f.as_dict() for f in self.fibers], reference=self.reference, output_path=output_path)
        if not ok:
            raise DataError(
                f"The tractogram could not be written: {output_path}\n"
                f"Action: Check that the results folder is writable."
            )

    def __call__(self) -> None:
        log_banner('Starting UKF Tractography')
        start_t = time.time()

        self._configure_reproducibility()

        self.load()
        self.calc()
        self.save()

        self._total_runtime_s = float(time.time() - start_t)
        logging.log(STATUS, f"Tracking finished in {round(self._total_runtime_s, 2)} sec")