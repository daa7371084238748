from __future__ import annotations

import logging
import os

import psutil

from ukfpy.configs.paths import resolve_input_path
from ukfpy.core.logfmt import DETAIL
from ukfpy.core.validation import ConfigurationError


NONE_LIKE = {'', 'n/a', 'n\\a', 'na', 'none'}

# (section, option) -> (type, lower, upper, default, description)
NUMERIC_OPTIONS = {
    ('TRACKING', 'step_length'): (float, 1e-3, 10.0, 0.3, 'Step length (mm)'),
    ('TRACKING', 'record_length'): (float, 1e-3, 100.0, 0.9, 'Distance between recorded samples (mm)'),
    ('TRACKING', 'max_half_fiber_length'): (float, 1.0, 10000.0, 250.0, 'Maximum length of each half fiber (mm)'),
    ('TRACKING', 'seeds_per_voxel'): (float, 1e-3, 100.0, 1.0, 'Seeds per voxel (< 1 keeps every n-th seed)'),
    ('TRACKING', 'min_radius'): (float, 0.0, 100.0, 0.87, 'Minimum radius of curvature (mm)'),
    ('TRACKING', 'max_nmse'): (float, 0.0, 10.0, 0.15, 'Maximum normalized reconstruction error'),
    ('TRACKING', 'max_ukf_iterations'): (int, 0, 100, 5, 'Additional filter passes per step'),
    ('TRACKING', 'fw_thresh'): (float, 0.0, 1.0, 0.65, 'Free-water weight ceiling'),
    ('TRACKING', 'rtop1_min_stop'): (float, 0.0, 1e9, 600.0, 'Primary-compartment RTOP floor'),
    ('TRACKING', 'seeding_threshold'): (float, 0.0, 1.0, 0.18, 'GFA threshold for whole-brain seeding'),
    ('TRACKING', 'max_odf_threshold'): (float, 0.0, 1.0, 0.7, 'Relative ODF peak threshold'),
    ('TRACKING', 'random_seed'): (int, 0, 2 ** 32 - 1, 0, 'Seed for the seed-jitter generator'),
    ('FILTER', 'p0'): (float, 0.0, 1e6, 0.01, 'Initial covariance scale'),
    ('FILTER', 'qm'): (float, 0.0, 1e6, 0.001, 'Process noise of the orientations'),
    ('FILTER', 'ql'): (float, 0.0, 1e6, 10.0, 'Process noise of the diffusivities'),
    ('FILTER', 'qw'): (float, 0.0, 1e6, 0.0015, 'Process noise of the compartment weights'),
    ('FILTER', 'qwiso'): (float, 0.0, 1e6, 0.0015, 'Process noise of the free-water weight'),
    ('FILTER', 'rs'): (float, 1e-12, 1e6, 0.015, 'Measurement noise'),
    ('FILTER', 'sigma_point_spread'): (float, 0.0, 1e3, 0.01, 'Sigma-point spread (kappa)'),
    ('INPUT', 'sigma_signal'): (float, 0.0, 100.0, 0.0, 'Gaussian smoothing of the signal (mm)'),
}

RECORD_FLAGS = {
    'record_nmse': True,
    'record_rtop': True,
    'record_weights': True,
    'record_free_water': True,
    'record_uncertainties': False,
    'record_state': False,
    'record_cov': False,
}


class configuration:
    def __init__(self, cfg_file) -> None:
        self.cfg_file = cfg_file
        # Paths may be given relative to the .ini file.
        self._resolve_input_paths(cfg_file)
        self._validate_config(cfg_file)  # Validate before setup
        self._setup_config(cfg_file)

    def _resolve_input_paths(self, input_cfg_file) -> None:
        if not input_cfg_file.has_section('INPUT'):
            return
        cfg_source = input_cfg_file.get('DEBUG', 'cfg_source', fallback=None)
        for key in ('dwi_file', 'bval_file', 'bvec_file', 'mask_file', 'seeds_file', 'csf_file'):
            raw = str(input_cfg_file.get('INPUT', key, fallback='') or '').strip()
            if not raw or raw.lower() in NONE_LIKE | {'auto'}:
                continue
            resolved = resolve_input_path(raw, cfg_source=cfg_source)
            if resolved != raw:
                input_cfg_file.set('INPUT', key, resolved)
                logging.debug(f"Resolved input path INPUT.{key}: {raw} -> {resolved}")

    @staticmethod
    def _normalize_output_mode(value: str | None) -> str:
        if value is None:
            return 'standard'
        v = str(value).strip().lower()
        if v in {'quiet', 'q'}:
            return 'quiet'
        if v in {'standard', 'std', 'default'}:
            return 'standard'
        if v in {'verbose', 'v'}:
            return 'verbose'
        if v in {'debug', 'dbg'}:
            return 'debug'
        raise ConfigurationError(
            "Invalid output_mode value.\n"
            "Valid options: quiet | standard | verbose | debug\n"
            f"Current value: '{value}'"
        )

    @property
    def output_mode(self) -> str:
        return str(getattr(self, '_output_mode', 'standard'))

    @staticmethod
    def _parse_labels(value: str | None) -> list[int]:
        if value is None or str(value).strip() == '':
            return [1]
        try:
            labels = [int(float(v)) for v in str(value).replace(';', ',').split(',') if v.strip() != '']
        except ValueError:
            raise ConfigurationError(
                "Invalid labels value: must be a comma-separated list of integers.\n"
                f"Current value: '{value}'"
            )
        if not labels:
            raise ConfigurationError("The [INPUT] labels list is empty.\nExample: 'labels = 1, 2'")
        return labels

    @staticmethod
    def _optional_path(input_cfg_file, key: str) -> str:
        raw = str(input_cfg_file.get('INPUT', key, fallback='') or '').strip()
        return '' if raw.lower() in NONE_LIKE else raw

    def _validate_config(self, input_cfg_file) -> None:
        """Validate configuration file for required sections/options, file paths and numeric ranges."""
        if not input_cfg_file.has_section('INPUT'):
            raise ConfigurationError(
                "Missing required section [INPUT] in configuration file.\n"
                "Check your .ini file and ensure all required sections are present."
            )

        required_inputs = {
            'dwi_file': 'DWI data file (NIfTI format)',
            'bval_file': 'B-values file (text)',
            'bvec_file': 'B-vectors file (text)',
        }

        for key, description in required_inputs.items():
            if not input_cfg_file.has_option('INPUT', key):
                raise ConfigurationError(
                    f"Missing required field '{key}' in [INPUT] section.\n"
                    f"This should specify the {description}.\n"
                    f"Add '{key} = /path/to/file' to your configuration."
                )

            file_path = input_cfg_file['INPUT'][key]
            if not os.path.exists(file_path):
                raise ConfigurationError(
                    f"File not found: {file_path}\n"
                    f"Specified in configuration as '{key}'.\n"
                    f"Check that the path is correct and the file exists."
                )

        mask_path = self._optional_path(input_cfg_file, 'mask_file')
        if mask_path and mask_path.lower() != 'auto' and not os.path.exists(mask_path):
            raise ConfigurationError(
                f"Mask file not found: {mask_path}\n"
                f"Specified in configuration as 'mask_file'.\n"
                f"Use 'mask_file = auto' to auto-generate a mask, leave it blank for a minimal signal mask, "
                f"or provide a valid path."
            )

        for key in ('seeds_file', 'csf_file'):
            p = self._optional_path(input_cfg_file, key)
            if p and not os.path.exists(p):
                raise ConfigurationError(
                    f"File not found: {p}\n"
                    f"Specified in configuration as '{key}'.\n"
                    f"Remove the option or point it at an existing NIfTI volume."
                )

        self._parse_labels(input_cfg_file.get('INPUT', 'labels', fallback=None))

        for (section, key), (kind, lower, upper, _, description) in NUMERIC_OPTIONS.items():
            if not input_cfg_file.has_option(section, key):
                continue
            raw = input_cfg_file[section][key]
            if str(raw).strip() == '':
                continue
            try:
                value = kind(raw)
            except ValueError:
                kind_name = 'an integer' if kind is int else 'a number'
                raise ConfigurationError(
                    f"Invalid {key} value: must be {kind_name}.\n"
                    f"Current value: '{raw}'"
                )
            if value < lower or value > upper:
                raise ConfigurationError(
                    f"Invalid {key}: {value}\n"
                    f"{description} should be between {lower:g} and {upper:g}.\n"
                    f"Default: {NUMERIC_OPTIONS[(section, key)][3]}"
                )

        step_raw = str(input_cfg_file.get('TRACKING', 'step_length', fallback='') or '').strip()
        record_raw = str(input_cfg_file.get('TRACKING', 'record_length', fallback='') or '').strip()
        step_length = float(step_raw) if step_raw else NUMERIC_OPTIONS[('TRACKING', 'step_length')][3]
        record_length = float(record_raw) if record_raw else NUMERIC_OPTIONS[('TRACKING', 'record_length')][3]
        if record_length < step_length:
            raise ConfigurationError(
                "record_length must be at least step_length.\n"
                f"Current values: step_length={step_length}, record_length={record_length}"
            )

        if input_cfg_file.has_section('OUTPUT'):
            for flag in RECORD_FLAGS:
                if input_cfg_file.has_option('OUTPUT', flag):
                    try:
                        input_cfg_file.getboolean('OUTPUT', flag)
                    except ValueError:
                        raise ConfigurationError(
                            f"Invalid [OUTPUT] {flag}: '{input_cfg_file['OUTPUT'][flag]}'\n"
                            "Valid values: true | false"
                        )
            output_file = str(input_cfg_file.get('OUTPUT', 'output_file', fallback='') or '').strip()
            if output_file and not output_file.lower().endswith('.trk'):
                raise ConfigurationError(
                    f"Unsupported output_file extension: {output_file}\n"
                    "Fibers are written as TrackVis files; use a '.trk' file name."
                )

        if input_cfg_file.has_section('DEVICE') and input_cfg_file.has_option('DEVICE', 'num_threads'):
            raw = str(input_cfg_file['DEVICE']['num_threads']).strip().lower()
            if raw not in {'', 'auto'}:
                try:
                    n = int(raw)
                except ValueError:
                    raise ConfigurationError(
                        "Invalid num_threads value: must be a positive integer or 'auto'.\n"
                        f"Current value: '{raw}'"
                    )
                if n < 1:
                    raise ConfigurationError(f"Invalid num_threads: {n}\nMust be >= 1 (or 'auto').")

        self._normalize_output_mode(input_cfg_file.get('DEBUG', 'output_mode', fallback=None))

        logging.getLogger().log(DETAIL, "✓ Configuration validation passed")

    def _setup_config(self, input_cfg_file) -> None:
        # Input Parameters
        self.dwi_path = input_cfg_file['INPUT']['dwi_file']
        self.bval_path = input_cfg_file['INPUT']['bval_file']
        self.bvec_path = input_cfg_file['INPUT']['bvec_file']
        # Mask semantics:
        # - missing key or 'auto': median_otsu auto mask
        # - explicit empty / none-like value: minimal signal-based mask
        if input_cfg_file.has_option('INPUT', 'mask_file'):
            self.mask_path = self._optional_path(input_cfg_file, 'mask_file')
        else:
            self.mask_path = 'auto'
        self.seeds_path = self._optional_path(input_cfg_file, 'seeds_file') or None
        self.csf_path = self._optional_path(input_cfg_file, 'csf_file') or None
        self.labels = self._parse_labels(input_cfg_file.get('INPUT', 'labels', fallback=None))

        for (section, key), (kind, _, _, default, _) in NUMERIC_OPTIONS.items():
            raw = input_cfg_file.get(section, key, fallback=None) if input_cfg_file.has_section(section) else None
            setattr(self, key, kind(raw) if raw is not None and str(raw).strip() != '' else default)

        # Output Parameters
        out = input_cfg_file['OUTPUT'] if input_cfg_file.has_section('OUTPUT') else {}
        self.output_file = str(out.get('output_file', '') or '').strip() or 'fibers.trk'
        self.save_dir = str(out.get('save_dir', '') or '').strip() or os.path.dirname(os.path.abspath(self.dwi_path))
        self.run_tag = str(out.get('run_tag', '') or '').strip() or None
        for flag, default in RECORD_FLAGS.items():
            setattr(self, flag, input_cfg_file.getboolean('OUTPUT', flag, fallback=default) if out else default)

        # Output mode (controls terminal verbosity + progress rendering).
        self._output_mode = self._normalize_output_mode(input_cfg_file.get('DEBUG', 'output_mode', fallback=None))
        self.verbose_flag = bool(self._output_mode in {'verbose', 'debug'})

        # Computing
        raw_threads = str(input_cfg_file.get('DEVICE', 'num_threads', fallback='') or '').strip().lower()
        if raw_threads in {'', 'auto'}:
            self.num_threads = int(psutil.cpu_count(logical=True) or 1)
        else:
            self.num_threads = int(raw_threads)

    @property
    def FILTER_ARGS(self) -> dict:
        return {
            'qm': self.qm,
            'ql': self.ql,
            'qw': self.qw,
            'qwiso': self.qwiso,
            'rs': self.rs,
            'kappa': self.sigma_point_spread,
        }

    @property
    def TRACKING_ARGS(self) -> dict:
        args = {
            'step_length': self.step_length,
            'record_length': self.record_length,
            'max_half_fiber_length': self.max_half_fiber_length,
            'min_radius': self.min_radius,
            'max_nmse': self.max_nmse,
            'max_ukf_iterations': self.max_ukf_iterations,
            'fw_thresh': self.fw_thresh,
            'rtop1_min_stop': self.rtop1_min_stop,
        }
        args.update({flag: getattr(self, flag) for flag in RECORD_FLAGS})
        return args
