import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from formatting import format_size, get_raw_resolution

API_PREFIX = "/api/v3"
DEFAULT_RETRIES = 2
EPISODE_FETCH_WORKERS = 8
RETRY_STATUSES = [408, 413, 429, 500, 502, 503, 504]


class ArrError(Exception):
    """Base class for errors raised while collecting media data."""


class ArrApiError(ArrError):
    """A request to Radarr/Sonarr failed or returned something unusable."""


class DataShapeError(ArrError):
    """Upstream data that cannot be turned into rows."""


# =========================
# Upstream records
# =========================
@dataclass
class MediaInfo:
    videoCodec: Optional[str] = None
    audioCodec: Optional[str] = None
    audioChannels: Optional[float] = None
    audioLanguages: Optional[str] = None
    subtitles: Optional[str] = None
    resolution: Optional[str] = None

    @staticmethod
    def from_dict(data: Optional[dict]) -> "MediaInfo":
        data = data or {}
        return MediaInfo(
            videoCodec=data.get("videoCodec"),
            audioCodec=data.get("audioCodec"),
            audioChannels=data.get("audioChannels"),
            audioLanguages=data.get("audioLanguages"),
            subtitles=data.get("subtitles"),
            resolution=data.get("resolution"),
        )


@dataclass
class MediaFile:
    """A movie file or episode file; both share this shape."""

    size: Optional[int] = None
    releaseGroup: Optional[str] = None
    source: Optional[str] = None
    mediaInfo: MediaInfo = field(default_factory=MediaInfo)

    @staticmethod
    def from_dict(data: Optional[dict]) -> Optional["MediaFile"]:
        if not data:
            return None
        quality = (data.get("quality") or {}).get("quality") or {}
        return MediaFile(
            size=data.get("size"),
            releaseGroup=data.get("releaseGroup"),
            source=quality.get("source"),
            mediaInfo=MediaInfo.from_dict(data.get("mediaInfo")),
        )


@dataclass
class QualityProfile:
    id: int
    name: str

    @staticmethod
    def from_dict(data: dict) -> "QualityProfile":
        return QualityProfile(id=data.get("id"), name=data.get("name", ""))


@dataclass
class Movie:
    id: Optional[int]
    title: Optional[str]
    year: Optional[int] = None
    monitored: Optional[bool] = None
    hasFile: bool = False
    qualityProfileId: Optional[int] = None
    movieFile: Optional[MediaFile] = None

    @staticmethod
    def from_dict(data: dict) -> "Movie":
        return Movie(
            id=data.get("id"),
            title=data.get("title"),
            year=data.get("year"),
            monitored=data.get("monitored"),
            hasFile=bool(data.get("hasFile")),
            qualityProfileId=data.get("qualityProfileId"),
            movieFile=MediaFile.from_dict(data.get("movieFile")),
        )


@dataclass
class SeasonInfo:
    seasonNumber: Optional[int]
    monitored: Optional[bool] = None

    @staticmethod
    def from_dict(data: dict) -> "SeasonInfo":
        return SeasonInfo(seasonNumber=data.get("seasonNumber"), monitored=data.get("monitored"))


@dataclass
class Series:
    id: Optional[int]
    title: Optional[str]
    year: Optional[int] = None
    monitored: Optional[bool] = None
    seriesType: Optional[str] = None
    qualityProfileId: Optional[int] = None
    seasons: List[SeasonInfo] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @staticmethod
    def from_dict(data: dict) -> "Series":
        return Series(
            id=data.get("id"),
            title=data.get("title"),
            year=data.get("year"),
            monitored=data.get("monitored"),
            seriesType=data.get("seriesType"),
            qualityProfileId=data.get("qualityProfileId"),
            seasons=[SeasonInfo.from_dict(s) for s in data.get("seasons") or []],
            raw=data,
        )

    def season_monitored(self, season_number: int) -> Optional[bool]:
        for season in self.seasons:
            if season.seasonNumber == season_number:
                return season.monitored
        return None


@dataclass
class Episode:
    id: Optional[int]
    seasonNumber: Optional[int] = None
    episodeNumber: Optional[int] = None
    absoluteEpisodeNumber: Optional[int] = None
    hasFile: bool = False
    monitored: Optional[bool] = None
    episodeFile: Optional[MediaFile] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @staticmethod
    def from_dict(data: dict) -> "Episode":
        return Episode(
            id=data.get("id"),
            seasonNumber=data.get("seasonNumber"),
            episodeNumber=data.get("episodeNumber"),
            absoluteEpisodeNumber=data.get("absoluteEpisodeNumber"),
            hasFile=bool(data.get("hasFile")),
            monitored=data.get("monitored"),
            episodeFile=MediaFile.from_dict(data.get("episodeFile")),
            raw=data,
        )


# =========================
# Row helpers
# =========================
def _split_languages(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return value.split("/")


def file_fields(media_file: Optional[MediaFile]) -> Dict[str, Any]:
    """Row fields describing a single file, in display order."""
    media_file = media_file or MediaFile()
    info = media_file.mediaInfo
    return {
        "releaseGroup": media_file.releaseGroup,
        "source": media_file.source,
        "videoCodec": info.videoCodec,
        "audioCodec": info.audioCodec,
        "audioChannels": info.audioChannels,
        "audioLanguage": _split_languages(info.audioLanguages),
        "subtitleLanguage": _split_languages(info.subtitles),
        "resolution": info.resolution,
        "rawResolution": get_raw_resolution(info.resolution),
        "size": format_size(media_file.size),
        "rawSize": media_file.size,
    }


def gather(values: List[Any]) -> List[Any]:
    """Flatten per-episode values into one list, dropping empty ones."""
    gathered: List[Any] = []
    for value in values:
        if isinstance(value, list):
            gathered.extend(v for v in value if v)
        elif value:
            gathered.append(value)
    return gathered


def total_size(episodes: List["Episode"]) -> Optional[int]:
    """Sum of the reported file sizes; None when no episode reports one."""
    sizes = [e.episodeFile.size for e in episodes if e.episodeFile and e.episodeFile.size is not None]
    if not sizes:
        return None
    return sum(sizes)


def aggregate_file_fields(episodes: List["Episode"]) -> Dict[str, Any]:
    per_episode = [file_fields(e.episodeFile) for e in episodes]
    row: Dict[str, Any] = {}
    for key in file_fields(None):
        if key in ("size", "rawSize"):
            continue
        row[key] = gather([fields[key] for fields in per_episode])
    raw_total = total_size(episodes)
    row["size"] = format_size(raw_total)
    row["rawSize"] = raw_total
    return row


def identifier(number: Optional[int]) -> Optional[str]:
    if number is None:
        return None
    return str(number).zfill(2)


# =========================
# Season/episode grid
# =========================
# grid[season][episode] -> Episode, None marks a gap. Upstream returns
# episodes in no particular order; indexing by number gives the order for
# free and makes "season N, episode M" a direct lookup.
SeasonGrid = List[Optional[List[Optional[Episode]]]]


def build_season_grid(series: Series, episodes: List[Episode]) -> SeasonGrid:
    grid: SeasonGrid = []
    for episode in episodes:
        if not episode.hasFile:
            continue

        season_number = episode.seasonNumber
        episode_number = episode.episodeNumber
        # Daily series report neither; fall back to the absolute number.
        if season_number is None and episode_number is None:
            season_number = 0
            episode_number = episode.absoluteEpisodeNumber or 0

        if season_number is None or episode_number is None or season_number < 0 or episode_number < 0:
            raise DataShapeError(
                f"Unexpected invalid episode data for series '{series.title}': "
                f"{json.dumps(series.raw, indent=2)} {json.dumps(episode.raw, indent=2)}"
            )

        while len(grid) <= season_number:
            grid.append(None)
        season = grid[season_number]
        if season is None:
            season = grid[season_number] = []
        while len(season) <= episode_number:
            season.append(None)
        season[episode_number] = episode
    return grid


def iter_seasons(grid: SeasonGrid) -> Iterator[Tuple[int, List[Tuple[int, Episode]]]]:
    """Yield (season number, [(episode number, episode)]) in ascending order,
    skipping gaps."""
    for season_number, season in enumerate(grid):
        if season is None:
            continue
        yield season_number, [(number, e) for number, e in enumerate(season) if e is not None]


@dataclass
class SeriesSeasons:
    series: Series
    grid: SeasonGrid


# =========================
# Normalisation
# =========================
def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def normalize_value(value: Any) -> Any:
    if isinstance(value, list):
        unique = dict.fromkeys(_stringify(v) for v in value if v is not None)
        return ",".join(unique).strip() or None
    if isinstance(value, str):
        return value.strip()
    return value


def normalize_media_data(media_data: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Turn adapter rows into jsonifiable rows.

    Lists become a comma-joined string of their unique values (None when
    empty), strings are trimmed and everything else passes through.
    """
    return [{key: normalize_value(value) for key, value in row.items()} for row in media_data]


# =========================
# Clients
# =========================
def build_session(retries: int = DEFAULT_RETRIES) -> requests.Session:
    sess = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=0.5,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=frozenset(["GET"]),
    )
    adapter = HTTPAdapter(
        max_retries=retry,
        pool_connections=EPISODE_FETCH_WORKERS,
        pool_maxsize=EPISODE_FETCH_WORKERS,
    )
    sess.mount("http://", adapter)
    sess.mount("https://", adapter)
    return sess


class ArrClient:
    """Shared request handling for the Radarr and Sonarr v3 APIs."""

    name = "Arr"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: Optional[requests.Session] = None,
        retries: int = DEFAULT_RETRIES,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + API_PREFIX
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or build_session(retries)

    def _request(self, endpoint: str) -> Any:
        url = f"{self.base_url}/{endpoint}"
        headers = {"accept": "application/json", "X-Api-Key": self.api_key}
        try:
            response = self.session.request("get", url, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logging.debug("%s API error during GET %s: %s", self.name, url, exc)
            raise ArrApiError(f"failed to make request to '{endpoint}'") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise ArrApiError(f"failed to parse JSON response from '{endpoint}'") from exc

    def _request_list(self, endpoint: str) -> List[dict]:
        data = self._request(endpoint)
        if not isinstance(data, list):
            raise ArrApiError(f"expected a list from '{endpoint}', got {type(data).__name__}")
        return data

    def get_all_media(self) -> List[Any]:
        raise NotImplementedError

    def get_media_data(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get_quality_profiles(self) -> Dict[int, str]:
        profiles = [QualityProfile.from_dict(p) for p in self._request_list("qualityprofile")]
        return {p.id: p.name for p in profiles}

    def _quality_profiles(self) -> Dict[int, str]:
        try:
            return self.get_quality_profiles()
        except ArrApiError as exc:
            raise ArrApiError(f"failed to get {self.name.lower()} quality profiles") from exc

    def get_normalized_media_data(self) -> List[Dict[str, Any]]:
        try:
            media_data = self.get_media_data()
        except ArrError as exc:
            raise ArrError("failed to get media data") from exc
        return normalize_media_data(media_data)


class RadarrClient(ArrClient):
    name = "Radarr"

    def get_all_media(self) -> List[Movie]:
        return [Movie.from_dict(m) for m in self._request_list("movie")]

    def get_media_data(self) -> List[Dict[str, Any]]:
        try:
            movies = self.get_all_media()
        except ArrApiError as exc:
            raise ArrApiError("failed to get radarr media") from exc
        profiles = self._quality_profiles()

        data = []
        for movie in movies:
            if not movie.hasFile:
                continue
            row: Dict[str, Any] = {
                "title": movie.title,
                "year": movie.year,
                "monitored": movie.monitored,
                "qualityProfile": profiles.get(movie.qualityProfileId),
            }
            row.update(file_fields(movie.movieFile))
            data.append(row)

        logging.debug(f"Radarr returned {len(movies)} movies, {len(data)} with files")
        return data


class SonarrClient(ArrClient):
    name = "Sonarr"

    def __init__(self, base_url: str, api_key: str, by_season: bool = False, by_episode: bool = False, **kwargs) -> None:
        super().__init__(base_url, api_key, **kwargs)
        self.by_season = by_season
        self.by_episode = by_episode

    def get_all_media(self) -> List[Series]:
        return [Series.from_dict(s) for s in self._request_list("series")]

    def get_episodes(self, series: Series) -> List[Episode]:
        if series.id is None:
            raise DataShapeError(f"series id is missing for series '{series.title}'")
        endpoint = f"episode?seriesId={series.id}&includeEpisodeFile=true"
        try:
            return [Episode.from_dict(e) for e in self._request_list(endpoint)]
        except ArrApiError as exc:
            raise ArrApiError(f"failed to get episode data for series '{series.title}' ({series.id})") from exc

    def _process_series(self, series: Series) -> SeriesSeasons:
        episodes = self.get_episodes(series)
        return SeriesSeasons(series=series, grid=build_season_grid(series, episodes))

    def get_all_series_seasons(self) -> List[SeriesSeasons]:
        """Fetch every series and its episodes.

        Episode requests run concurrently. All of them are allowed to finish
        and any single failure fails the whole call.
        """
        try:
            all_series = self.get_all_media()
        except ArrApiError as exc:
            raise ArrApiError("failed to get sonarr media") from exc
        if not all_series:
            return []

        workers = min(EPISODE_FETCH_WORKERS, len(all_series))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self._process_series, s) for s in all_series]

        results = []
        for future in futures:
            try:
                results.append(future.result())
            except ArrError as exc:
                raise ArrError("failed to process series") from exc
        return results

    def get_media_data(self) -> List[Dict[str, Any]]:
        all_series = self.get_all_series_seasons()
        profiles = self._quality_profiles()

        if self.by_episode:
            build: Callable[[SeriesSeasons, Dict[int, str]], List[Dict[str, Any]]] = self._episode_rows
        elif self.by_season:
            build = self._season_rows
        else:
            build = self._series_rows

        data: List[Dict[str, Any]] = []
        for entry in all_series:
            data.extend(build(entry, profiles))
        return data

    def _episode_rows(self, entry: SeriesSeasons, profiles: Dict[int, str]) -> List[Dict[str, Any]]:
        series = entry.series
        rows = []
        for season_number, episodes in iter_seasons(entry.grid):
            for episode_number, episode in episodes:
                row: Dict[str, Any] = {
                    "title": series.title,
                    "year": series.year,
                    "season": identifier(season_number),
                    "episode": identifier(episode_number),
                    "type": series.seriesType,
                    "monitored": episode.monitored,
                    "qualityProfile": profiles.get(series.qualityProfileId),
                }
                row.update(file_fields(episode.episodeFile))
                rows.append(row)
        return rows

    def _season_rows(self, entry: SeriesSeasons, profiles: Dict[int, str]) -> List[Dict[str, Any]]:
        series = entry.series
        rows = []
        for season_number, episodes in iter_seasons(entry.grid):
            row: Dict[str, Any] = {
                "title": series.title,
                "year": series.year,
                "season": identifier(season_number),
                "type": series.seriesType,
                "monitored": series.season_monitored(season_number),
                "qualityProfile": profiles.get(series.qualityProfileId),
            }
            row.update(aggregate_file_fields([e for _number, e in episodes]))
            rows.append(row)
        return rows

    def _series_rows(self, entry: SeriesSeasons, profiles: Dict[int, str]) -> List[Dict[str, Any]]:
        series = entry.series
        episodes = [e for _season, season in iter_seasons(entry.grid) for _number, e in season]
        if not episodes:
            return []
        row: Dict[str, Any] = {
            "title": series.title,
            "year": series.year,
            "type": series.seriesType,
            "monitored": series.monitored,
            "qualityProfile": profiles.get(series.qualityProfileId),
        }
        row.update(aggregate_file_fields(episodes))
        return [row]
