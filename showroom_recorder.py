import os
import sys
import time
import signal
import shutil
import logging
import logging.handlers
import argparse
import threading
import subprocess
import configparser
from enum import Enum
from datetime import datetime

import requests

# --- Global logger instance ---
logger = logging.getLogger('ShowroomRecorder')

ONLIVES_API = "https://www.showroom-live.com/api/live/onlives"
STREAMING_URL_API = "https://www.showroom-live.com/api/live/streaming_url"

CONFIG_SECTION = 'ShowroomRecorder'

# --- Default Configuration Values ---
DEFAULT_FFMPEG_PATH = ""
DEFAULT_CHECK_INTERVAL = "3"
DEFAULT_OUTPUT_DIRECTORY = "recordings"
DEFAULT_REQUEST_TIMEOUT = "10"
DEFAULT_STOP_GRACE_PERIOD = "2"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = "recorder.log"
DEFAULT_QUIET_MODE = "false"
DEFAULT_CONFIG_FILE = "config.ini"


class RecorderError(Exception):
    pass


class InvalidTargetReference(RecorderError, ValueError):
    """The room reference does not contain a usable room key."""


class StreamResolutionError(RecorderError):
    """Base class for every way a stream URL lookup can fail."""


class RequestFailed(StreamResolutionError):
    pass


class ParseFailed(StreamResolutionError):
    pass


class NoStreamsAvailable(StreamResolutionError):
    pass


class ControllerState(Enum):
    IDLE = "idle"
    RECORDING = "recording"


def setup_logging(log_level_str="INFO", log_file="recorder.log", quiet_mode=False):
    """Configures logging to console and a rotating file."""
    numeric_level = getattr(logging, log_level_str.upper(), None)
    if not isinstance(numeric_level, int):
        logger.warning(f"Invalid log level: {log_level_str}. Defaulting to INFO.")
        numeric_level = logging.INFO

    logger.setLevel(numeric_level)
    # Handlers are attached here only; keep records away from the root logger.
    logger.propagate = False

    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if not quiet_mode:
        ch = logging.StreamHandler(sys.stdout)
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    if not log_file:
        return

    try:
        rfh = logging.handlers.RotatingFileHandler(log_file, maxBytes=5*1024*1024, backupCount=3)
        rfh.setFormatter(formatter)
        logger.addHandler(rfh)
    except OSError as e:
        if quiet_mode:
            eh = logging.StreamHandler(sys.stderr)
            eh.setFormatter(formatter)
            eh.setLevel(logging.ERROR)
            logger.addHandler(eh)
        logger.error(f"Failed to set up RotatingFileHandler for {log_file}: {e}. Logging to console only.")


def load_config(config_path=DEFAULT_CONFIG_FILE):
    """Returns a ConfigParser seeded with defaults and overlaid with config_path if it exists."""
    config = configparser.ConfigParser()
    config[CONFIG_SECTION] = {
        'ffmpeg_path': DEFAULT_FFMPEG_PATH,
        'check_interval': DEFAULT_CHECK_INTERVAL,
        'output_directory': DEFAULT_OUTPUT_DIRECTORY,
        'request_timeout': DEFAULT_REQUEST_TIMEOUT,
        'stop_grace_period': DEFAULT_STOP_GRACE_PERIOD,
        'log_level': DEFAULT_LOG_LEVEL,
        'log_file': DEFAULT_LOG_FILE,
        'quiet_mode': DEFAULT_QUIET_MODE,
    }

    if os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config.read_file(f)
            logger.info(f"Successfully read configuration from {config_path}.")
        except (configparser.Error, OSError) as e:
            logger.error(f"Error reading {config_path}: {e}. Using default values.")
    return config


def get_positive_float(config, option, default):
    """Reads a positive number from the config, falling back to default on bad values."""
    try:
        value = config.getfloat(CONFIG_SECTION, option, fallback=float(default))
    except ValueError:
        logger.warning(f"Configured {option} is not a number. Using default {default}.")
        return float(default)
    if value <= 0:
        logger.warning(f"Configured {option} '{value}' is not positive. Using default {default}.")
        return float(default)
    return value


def _ffmpeg_in_directory(directory):
    exe_name = "ffmpeg.exe" if os.name == 'nt' else "ffmpeg"
    potential_path = os.path.join(directory, exe_name)
    if os.path.isfile(potential_path):
        return potential_path
    return None


def get_ffmpeg_path(config=None):
    """Determines the path to the ffmpeg executable, checking config, env var, then PATH."""
    if config:
        ffmpeg_path_config = config.get(CONFIG_SECTION, 'ffmpeg_path', fallback=DEFAULT_FFMPEG_PATH)
        if ffmpeg_path_config:
            if os.path.isfile(ffmpeg_path_config):
                logger.debug(f"FFmpeg path found in config: {ffmpeg_path_config}")
                return ffmpeg_path_config
            elif os.path.isdir(ffmpeg_path_config):
                potential_path = _ffmpeg_in_directory(ffmpeg_path_config)
                if potential_path:
                    logger.debug(f"FFmpeg executable found in configured directory: {potential_path}")
                    return potential_path
            logger.warning(f"ffmpeg_path '{ffmpeg_path_config}' in config is not a valid file or directory containing ffmpeg.")

    ffmpeg_path_env = os.environ.get("FFMPEG_PATH")
    if ffmpeg_path_env:
        if os.path.isfile(ffmpeg_path_env):
            logger.debug(f"FFmpeg path found in FFMPEG_PATH environment variable: {ffmpeg_path_env}")
            return ffmpeg_path_env
        elif os.path.isdir(ffmpeg_path_env):
            potential_path = _ffmpeg_in_directory(ffmpeg_path_env)
            if potential_path:
                logger.debug(f"FFmpeg executable found in FFMPEG_PATH directory: {potential_path}")
                return potential_path
        logger.warning(f"FFMPEG_PATH '{ffmpeg_path_env}' is not a valid file or directory containing ffmpeg.")

    ffmpeg_in_path = shutil.which("ffmpeg")
    if ffmpeg_in_path:
        logger.debug(f"FFmpeg found in system PATH: {ffmpeg_in_path}")
        return ffmpeg_in_path

    logger.error("FFmpeg not found. Please install it, add to PATH, or set ffmpeg_path in config.ini or FFMPEG_PATH environment variable.")
    return None


def extract_room_url_key(room_url):
    """Extracts the room key from a room URL such as https://www.showroom-live.com/r/some_room."""
    parts = room_url.split("/r/")
    if len(parts) != 2:
        raise InvalidTargetReference(f"invalid room URL format: {room_url!r}")

    room_url_key = parts[1].strip()
    if not room_url_key:
        raise InvalidTargetReference(f"empty room URL key: {room_url!r}")
    return room_url_key


def check_live_status(room_url_key, timeout=float(DEFAULT_REQUEST_TIMEOUT)):
    """
    Looks for room_url_key in the onlives listing.
    Returns: A tuple (room_id, is_live); (0, False) when the room is absent or the query failed.
    """
    try:
        response = requests.get(ONLIVES_API, timeout=timeout)
        response.raise_for_status()
        data = response.json()
        for genre in data.get('onlives') or []:
            for room in genre.get('lives') or []:
                if room.get('room_url_key') == room_url_key:
                    return int(room['room_id']), True
    except requests.exceptions.RequestException as e:
        logger.error(f"Error fetching onlives: {e}")
        return 0, False
    except ValueError as e:
        logger.error(f"Error parsing onlives response: {e}")
        return 0, False
    except (TypeError, AttributeError, KeyError) as e:
        logger.error(f"Malformed onlives response: {e!r}")
        return 0, False

    logger.debug(f"{room_url_key} is not in the onlives listing.")
    return 0, False


def select_best_stream(streams):
    """Picks the first entry with the strictly highest quality."""
    best = None
    best_quality = None
    for stream in streams:
        quality = stream['quality']
        if not isinstance(quality, int) or isinstance(quality, bool):
            raise ValueError(f"quality is not an integer: {quality!r}")
        if best is None or quality > best_quality:
            best, best_quality = stream, quality
    return best


def get_streaming_url(room_id, timeout=float(DEFAULT_REQUEST_TIMEOUT)):
    """Returns the playback URL of the highest quality rendition for room_id."""
    params = {'room_id': room_id, 'abr_available': 1}
    try:
        response = requests.get(STREAMING_URL_API, params=params, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise RequestFailed(f"streaming_url request for room {room_id} failed: {e}") from e

    try:
        streams = response.json().get('streaming_url_list') or []
        best = select_best_stream(streams)
        if best is None:
            raise NoStreamsAvailable(f"no streaming URLs available for room {room_id}")
        url = best['url']
        if not isinstance(url, str) or not url:
            raise ValueError(f"url is not a non-empty string: {url!r}")
        return url
    except (ValueError, TypeError, AttributeError, KeyError) as e:
        raise ParseFailed(f"unexpected streaming_url response for room {room_id}: {e!r}") from e


def build_output_path(output_directory, room_id, started_at, sequence):
    filename = f"{room_id}_{started_at.strftime('%Y%m%d_%H%M%S')}_{sequence}.ts"
    return os.path.join(output_directory, filename)


class CaptureSupervisor:
    """
    Owns the ffmpeg process of the current recording.

    A daemon thread waits on each process. stop() sets the recording's
    stop_requested event before signalling ffmpeg, so the observer can tell a
    requested stop from ffmpeg dying on its own.
    """

    def __init__(self, ffmpeg_path="ffmpeg", show_output=False, grace_period=float(DEFAULT_STOP_GRACE_PERIOD)):
        self.ffmpeg_path = ffmpeg_path
        self.show_output = show_output
        self.grace_period = grace_period
        self._process = None
        self._output_path = None
        self._stop_requested = None
        self._finished = None
        self._observer = None

    @property
    def is_active(self):
        return self._process is not None and not self._finished.is_set()

    def build_command(self, stream_url, output_path):
        return [self.ffmpeg_path, "-i", stream_url, "-c", "copy", "-y", output_path]

    def start(self, stream_url, output_path):
        """Launches ffmpeg copying stream_url into output_path. Returns True if it started."""
        if self.is_active:
            logger.warning(f"Refusing to start a capture while {self._output_path} is still recording.")
            return False

        output_dir = os.path.dirname(output_path)
        if output_dir:
            try:
                os.makedirs(output_dir, exist_ok=True)
            except OSError as e:
                logger.error(f"Error creating output directory {output_dir}: {e}")
                return False

        if self.show_output:
            stdout = stderr = None
        else:
            stdout = stderr = subprocess.DEVNULL

        cmd = self.build_command(stream_url, output_path)
        # Hide stream URL from logs
        logger.debug(f"FFmpeg command: {self.build_command('******', output_path)}")
        try:
            process = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=stdout, stderr=stderr,
                                       start_new_session=True)
        except (OSError, ValueError, TypeError, subprocess.SubprocessError) as e:
            logger.error(f"Error starting ffmpeg ({self.ffmpeg_path}): {e}")
            return False

        self._process = process
        self._output_path = output_path
        self._stop_requested = threading.Event()
        self._finished = threading.Event()
        self._observer = threading.Thread(
            target=self._watch,
            args=(process, output_path, self._stop_requested, self._finished),
            name=f"ffmpeg-{process.pid}",
            daemon=True,
        )
        self._observer.start()
        logger.debug(f"FFmpeg started with PID {process.pid}.")
        return True

    def _watch(self, process, output_path, stop_requested, finished):
        returncode = process.wait()
        try:
            if stop_requested.is_set():
                logger.info(f"Recording saved: {output_path}")
            elif returncode:
                logger.error(f"ffmpeg exited with error (exit status {returncode}) while recording {output_path}")
            else:
                logger.warning(f"ffmpeg exited unexpectedly while recording {output_path}")
        finally:
            finished.set()

    def wait(self, timeout=None):
        """Blocks until the current process has exited. Returns False on timeout."""
        if self._finished is None:
            return True
        return self._finished.wait(timeout)

    def stop(self):
        """
        Asks ffmpeg to finish the file, killing it if it does not exit within the grace period.

        Returns as soon as ffmpeg exits; grace_period is an upper bound, not a fixed sleep.
        """
        process = self._process
        if process is None:
            return

        self._stop_requested.set()
        try:
            process.send_signal(signal.SIGINT)
        except (OSError, ValueError) as e:
            logger.warning(f"Error sending interrupt to ffmpeg (PID {process.pid}): {e}. Killing it.")
            self._kill(process)

        if not self._finished.wait(self.grace_period) and process.poll() is None:
            logger.warning(f"ffmpeg (PID {process.pid}) did not exit within {self.grace_period}s. Sending SIGKILL.")
            self._kill(process)

        self._process = None

    def _kill(self, process):
        try:
            process.kill()
        except OSError as e:
            logger.error(f"Failed to kill ffmpeg (PID {process.pid}): {e}")


class SessionController:
    """Decides on every tick whether to start, stop, or keep the single recording."""

    def __init__(self, room_url_key, supervisor, output_directory=DEFAULT_OUTPUT_DIRECTORY,
                 check_interval=float(DEFAULT_CHECK_INTERVAL), request_timeout=float(DEFAULT_REQUEST_TIMEOUT)):
        self.room_url_key = room_url_key
        self.supervisor = supervisor
        self.output_directory = output_directory
        self.check_interval = check_interval
        self.request_timeout = request_timeout
        self.state = ControllerState.IDLE
        self.recording = None
        self.recording_count = 0

    def tick(self):
        if self.state is ControllerState.RECORDING and not self.supervisor.is_active:
            logger.warning(f"Capture for {self.recording['output_path']} is no longer running. Back to idle.")
            self._set_idle()

        room_id, live = check_live_status(self.room_url_key, timeout=self.request_timeout)

        if live and self.state is ControllerState.IDLE:
            logger.info(f"{self.room_url_key} is LIVE (room_id {room_id}).")
            self.start_recording(room_id)
        elif not live and self.state is ControllerState.RECORDING:
            logger.info(f"{self.room_url_key} is no longer live. Stopping recording.")
            self.stop_recording()
        elif live:
            logger.debug(f"{self.room_url_key} still live; recording {self.recording['output_path']}.")
        else:
            logger.debug(f"{self.room_url_key} is offline.")

    def start_recording(self, room_id):
        try:
            stream_url = get_streaming_url(room_id, timeout=self.request_timeout)
        except StreamResolutionError as e:
            logger.error(f"Error getting streaming URL: {e}")
            return False

        self.recording_count += 1
        started_at = datetime.now()
        output_path = build_output_path(self.output_directory, room_id, started_at, self.recording_count)

        logger.info(f"Started recording: {os.path.basename(output_path)}")
        if not self.supervisor.start(stream_url, output_path):
            logger.error(f"Failed to start recording for room {room_id} (check previous logs for details).")
            return False

        self.recording = {
            'room_id': room_id,
            'started_at': started_at,
            'sequence': self.recording_count,
            'output_path': output_path,
        }
        self.state = ControllerState.RECORDING
        return True

    def stop_recording(self):
        if self.state is not ControllerState.RECORDING:
            return
        try:
            self.supervisor.stop()
        finally:
            self._set_idle()

    def _set_idle(self):
        self.state = ControllerState.IDLE
        self.recording = None

    def shutdown(self):
        if self.state is ControllerState.RECORDING:
            logger.info(f"Stopping recording {self.recording['output_path']} due to shutdown...")
            self.stop_recording()

    def run(self, shutdown_event):
        """Ticks immediately, then every check_interval seconds until shutdown_event is set."""
        try:
            self.tick()
            next_tick = time.monotonic() + self.check_interval
            while not shutdown_event.wait(max(0.0, next_tick - time.monotonic())):
                self.tick()
                next_tick += self.check_interval
                now = time.monotonic()
                if next_tick < now:
                    # Ticks missed while a slow request was blocking are dropped.
                    next_tick = now + self.check_interval
            logger.info("Received shutdown signal")
        finally:
            self.shutdown()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='showroom-recorder',
        description="Record a SHOWROOM room every time it goes live.",
    )
    parser.add_argument('room_url', help="room URL, e.g. https://www.showroom-live.com/r/room_key")
    parser.add_argument('--debug', action='store_true', help="show ffmpeg output")
    parser.add_argument('--config', default=DEFAULT_CONFIG_FILE, help="path to config.ini (default: %(default)s)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    # --- Initial Logging Setup (before config is fully parsed for log settings) ---
    setup_logging(DEFAULT_LOG_LEVEL, log_file=None)

    config = load_config(args.config)
    if not os.path.exists(args.config):
        try:
            with open(args.config, 'w', encoding='utf-8') as configfile:
                config.write(configfile)
            logger.info(f"Created a default {args.config} with initial settings.")
        except OSError as e:
            logger.error(f"Could not write default {args.config}: {e}")

    # --- Setup Logging (based on config) ---
    quiet_mode = config.getboolean(CONFIG_SECTION, 'quiet_mode', fallback=False)
    setup_logging(
        log_level_str=config.get(CONFIG_SECTION, 'log_level', fallback=DEFAULT_LOG_LEVEL),
        log_file=config.get(CONFIG_SECTION, 'log_file', fallback=DEFAULT_LOG_FILE),
        quiet_mode=quiet_mode,
    )

    try:
        room_url_key = extract_room_url_key(args.room_url)
    except InvalidTargetReference as e:
        logger.critical(f"Failed to parse room URL: {e}")
        sys.exit(1)

    ffmpeg_path = get_ffmpeg_path(config)
    if not ffmpeg_path:
        logger.warning("Falling back to 'ffmpeg'; recordings will fail to start until it is installed.")
        ffmpeg_path = "ffmpeg"

    check_interval = get_positive_float(config, 'check_interval', DEFAULT_CHECK_INTERVAL)
    output_directory = config.get(CONFIG_SECTION, 'output_directory', fallback=DEFAULT_OUTPUT_DIRECTORY)
    supervisor = CaptureSupervisor(
        ffmpeg_path=ffmpeg_path,
        show_output=args.debug,
        grace_period=get_positive_float(config, 'stop_grace_period', DEFAULT_STOP_GRACE_PERIOD),
    )
    controller = SessionController(
        room_url_key,
        supervisor,
        output_directory=output_directory,
        check_interval=check_interval,
        request_timeout=get_positive_float(config, 'request_timeout', DEFAULT_REQUEST_TIMEOUT),
    )

    shutdown_event = threading.Event()

    def request_shutdown(signum, frame):
        shutdown_event.set()

    signal.signal(signal.SIGINT, request_shutdown)
    signal.signal(signal.SIGTERM, request_shutdown)

    logger.info(f"Started monitoring: {room_url_key}")
    logger.info(f"Check interval set to: {check_interval} seconds")
    logger.info(f"Recordings will be saved to: {output_directory}")

    try:
        controller.run(shutdown_event)
    except Exception as e:
        logger.critical(f"An unexpected critical error occurred in the main loop: {e}", exc_info=True)
        sys.exit(1)
    logger.info("ShowroomRecorder finished.")


if __name__ == "__main__":
    main()
