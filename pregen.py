"""Candidate selection and the pregenerated "next image" artifact.

Rendering one frame means scraping, probing, downloading, and dithering,
which takes seconds.  The frame that a request receives is therefore always
the one rendered *after the previous request*; the request only kicks off
the render for the next one.

Concurrency notes:

* background refreshes are serialized through a single in-flight flag, so
  at most one runs at a time.
* a request that finds no artifact at all renders synchronously and does
  not take the flag.  Several cold requests arriving together may render
  redundant frames concurrently; the output is fungible and the last
  ``os.replace`` wins.
* a process exit mid-render abandons the temporary file only; the canonical
  file is replaced atomically or not at all.
* each new artifact gets an mtime at least one whole second past the one it
  replaces, so consecutive frames never share a ``Last-Modified`` value and
  an ``If-Modified-Since`` match always means the same frame.
"""

import logging
import os
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import requests

from album_source import CandidateURL
from frame_errors import DecodeError, DiscoveryError, ExhaustedAttemptsError, OrientationRejected
from frame_render import transform

logger = logging.getLogger('inkframe.pregen')

DEFAULT_MAX_ATTEMPTS = 10
ARTIFACT_NAME = 'next.png'

MISSING = 'MISSING'
GENERATING = 'GENERATING'
READY = 'READY'


class CandidateSelector:
    """Draw random candidates until one survives every check."""

    def __init__(self, suitability, fetch, options=None, transform_fn=transform, rng=None):
        self.suitability = suitability
        self.fetch = fetch
        self.options = options
        self.transform_fn = transform_fn
        self.rng = rng or random.Random()

    def select_and_process(self, urls, max_attempts=DEFAULT_MAX_ATTEMPTS):
        if not urls:
            raise DiscoveryError('No candidate URLs to choose from')
        for attempt in range(1, max_attempts + 1):
            candidate = self.rng.choice(urls)
            url = candidate.url if isinstance(candidate, CandidateURL) else candidate
            logger.info(f"Processing image (attempt {attempt}/{max_attempts})...")

            verdict = self.suitability.check(url)
            if not verdict.eligible:
                logger.debug(f"Rejected {url}: {verdict.reason}")
                continue
            try:
                data = self.fetch(url)
            except requests.RequestException as e:
                logger.warning(f"Fetch failed for {url}: {e}")
                continue
            try:
                return self.transform_fn(data, self.options)
            except OrientationRejected as e:
                self.suitability.reject_orientation(url, e.width, e.height)
            except DecodeError as e:
                logger.warning(f"Skipping undecodable image {url}: {e}")
        raise ExhaustedAttemptsError(max_attempts)


@dataclass(frozen=True)
class ServedImage:
    data: bytes
    mimetype: str
    mtime: float
    etag: str


class PregenerationManager:
    """Owns ``<data_dir>/next.png`` and keeps one frame ready ahead of time."""

    def __init__(self, data_dir, generate, executor=None):
        os.makedirs(data_dir, exist_ok=True)
        self.path = os.path.join(str(data_dir), ARTIFACT_NAME)
        self.tmp_path = self.path + '.tmp'
        self._generate = generate
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix='pregen')
        self._in_flight = threading.Lock()
        self._write_lock = threading.Lock()
        self.last_error = None
        self.last_generated = None
        self._remove_stale_tmp()

    def _remove_stale_tmp(self):
        if os.path.exists(self.tmp_path):
            logger.info(f"Removing abandoned temporary file {self.tmp_path}")
            try:
                os.remove(self.tmp_path)
            except OSError as e:
                logger.warning(f"Could not remove {self.tmp_path}: {e}")

    @property
    def state(self):
        if os.path.exists(self.path):
            return READY
        if self._in_flight.locked():
            return GENERATING
        return MISSING

    @property
    def regenerating(self):
        return self._in_flight.locked()

    def ensure_fresh(self):
        """Render a new frame and swap it in; the old frame stays on failure."""
        started = time.time()
        image = self._generate()
        self._write_atomic(image.data)
        self.last_generated = time.time()
        self.last_error = None
        logger.info(f"Pregenerated {image.width}x{image.height} frame "
                    f"({len(image.data)} bytes) in {self.last_generated - started:.1f}s")
        return image

    def _write_atomic(self, data):
        with self._write_lock:
            try:
                previous = int(os.stat(self.path).st_mtime)
            except FileNotFoundError:
                previous = None
            try:
                with open(self.tmp_path, 'wb') as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                # Last-Modified has whole-second resolution
                if previous is not None and int(os.stat(self.tmp_path).st_mtime) <= previous:
                    os.utime(self.tmp_path, (previous + 1, previous + 1))
                os.replace(self.tmp_path, self.path)
            except OSError:
                try:
                    os.remove(self.tmp_path)
                except OSError:
                    pass
                raise

    def refresh_async(self):
        """Schedule a background refresh unless one is already running."""
        if not self._in_flight.acquire(blocking=False):
            logger.debug('Regeneration already in flight, not scheduling another')
            return None
        try:
            return self._executor.submit(self._background_refresh)
        except RuntimeError:
            self._in_flight.release()
            raise

    def _background_refresh(self):
        try:
            self.ensure_fresh()
        except Exception as e:  # pylint: disable=broad-except
            self.last_error = str(e)
            logger.exception('Background regeneration failed, keeping previous frame')
        finally:
            self._in_flight.release()

    def read_current(self):
        with open(self.path, 'rb') as f:
            data = f.read()
            st = os.fstat(f.fileno())
        return ServedImage(data, 'image/png', st.st_mtime, f'"{st.st_size:x}-{st.st_mtime_ns:x}"')

    def serve_current(self):
        if self.state != READY:
            logger.info('No pregenerated frame yet, rendering synchronously')
            self.ensure_fresh()
        served = self.read_current()
        self.refresh_async()
        return served

    def status(self):
        age = None
        if os.path.exists(self.path):
            age = int(time.time() - os.path.getmtime(self.path))
        return {
            'state': self.state,
            'artifact_ready': age is not None,
            'artifact_age_seconds': age,
            'regenerating': self.regenerating,
            'last_error': self.last_error,
        }

    def close(self, wait=False):
        self._executor.shutdown(wait=wait)
