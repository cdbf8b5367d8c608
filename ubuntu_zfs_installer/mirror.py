#!/usr/bin/env python3
# Mirror Selector Module
# Chooses and validates the APT mirror used to bootstrap the target system

import glob
import logging
import os
import platform
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

ARCHIVE_MIRROR = "http://archive.ubuntu.com/ubuntu"
PORTS_MIRROR = "http://ports.ubuntu.com/ubuntu-ports"
SECURITY_MIRROR = "http://security.ubuntu.com/ubuntu"
GEOIP_URL = "https://ipapi.co/country/"

PORTS_ARCHITECTURES = ("arm64", "armhf", "ppc64el", "s390x", "riscv64")

# Countries with an official <cc>.archive.ubuntu.com country mirror
REGIONAL_COUNTRIES = {
    "AR", "AT", "AU", "BE", "BG", "BR", "CA", "CH", "CL", "CN", "CZ", "DE",
    "DK", "EE", "ES", "FI", "FR", "GB", "GR", "HK", "HU", "ID", "IE", "IL",
    "IN", "IS", "IT", "JP", "KR", "LT", "LV", "MX", "MY", "NL", "NO", "NZ",
    "PH", "PL", "PT", "RO", "RU", "SE", "SG", "SK", "TH", "TR", "TW", "UA",
    "US", "VN", "ZA",
}

SOURCES_FILES = ("/etc/apt/sources.list",)
SOURCES_GLOBS = ("/etc/apt/sources.list.d/*.list", "/etc/apt/sources.list.d/*.sources")

MACHINE_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "i386": "i386",
    "i686": "i386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armhf",
    "ppc64le": "ppc64el",
    "s390x": "s390x",
    "riscv64": "riscv64",
}


@dataclass
class MirrorCandidate:
    url: str
    source: str
    reachable: bool = False
    https: bool = False


def debian_arch(machine=None):
    """Map a kernel machine name (uname -m) to a Debian architecture"""
    machine = (machine or platform.machine()).lower()
    return MACHINE_ARCHITECTURES.get(machine, machine)


def is_ports_arch(arch):
    return arch in PORTS_ARCHITECTURES


def fallback_mirror(arch):
    return PORTS_MIRROR if is_ports_arch(arch) else ARCHIVE_MIRROR


def default_security_mirror(arch):
    return PORTS_MIRROR if is_ports_arch(arch) else SECURITY_MIRROR


def regional_mirror(country, arch):
    """Map a country code to a regional mirror; ARM always uses ports"""
    if is_ports_arch(arch):
        return PORTS_MIRROR
    country = (country or "").strip().upper()
    if country in REGIONAL_COUNTRIES:
        return f"http://{country.lower()}.archive.ubuntu.com/ubuntu"
    return None


def release_index_url(mirror, codename):
    return f"{mirror.rstrip('/')}/dists/{codename}/Release"


def https_variant(url):
    if url.startswith("http://"):
        return "https://" + url[len("http://"):]
    return None


def _is_usable_source(url):
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False
    host = parsed.hostname or ""
    if host in ("localhost", "::1") or host.startswith("127."):
        return False
    return "security" not in url


def parse_live_mirror(lines):
    """Return the first non-security, non-local mirror declared in APT sources.

    Understands both one-line ("deb URL suite ...") and deb822 ("URIs:")
    formats.
    """
    for raw in lines:
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        urls = []
        if line.startswith("deb "):
            parts = line.split()[1:]
            # Skip an options block like [arch=amd64 signed-by=...]
            if parts and parts[0].startswith("["):
                while parts and not parts[0].endswith("]"):
                    parts.pop(0)
                parts = parts[1:]
            urls = parts[:1]
        elif line.lower().startswith("uris:"):
            urls = line.split(":", 1)[1].split()
        for url in urls:
            if _is_usable_source(url):
                return url.rstrip("/")
    return None


class MirrorSelector:
    def __init__(self, runner, arch=None, sources_files=None):
        self.runner = runner
        self.arch = arch or debian_arch()
        self.sources_files = sources_files

    def probe(self, url):
        """Bounded reachability probe; passes when curl is unavailable"""
        if not self.runner.which("curl"):
            logger.debug(f"curl not available, assuming {url} is reachable")
            return True
        result = self.runner.run(
            ["curl", "-fsI", "--connect-timeout", "5", "--max-time", "10", url],
            check=False,
            readonly=True,
        )
        return result.ok

    def validate(self, candidate, codename):
        candidate.reachable = self.probe(release_index_url(candidate.url, codename))
        return candidate

    def upgrade_https(self, candidate, codename):
        """Switch the candidate to HTTPS if the same path answers over HTTPS"""
        secure = https_variant(candidate.url)
        if secure and self.probe(release_index_url(secure, codename)):
            logger.debug(f"Mirror {candidate.url} supports HTTPS")
            candidate.url = secure
            candidate.https = True
        elif candidate.url.startswith("https://"):
            candidate.https = True
        return candidate

    def _sources_files(self):
        if self.sources_files is not None:
            return list(self.sources_files)
        files = list(SOURCES_FILES)
        for pattern in SOURCES_GLOBS:
            files.extend(sorted(glob.glob(pattern)))
        return files

    def live_mirror(self):
        """Mirror configured in the running live environment, if any"""
        lines = []
        for path in self._sources_files():
            if os.path.isfile(path):
                with open(path, "r") as f:
                    lines.extend(f.read().splitlines())
        return parse_live_mirror(lines)

    def geoip_country(self):
        """Best-effort country lookup; None on any failure"""
        if not self.runner.which("curl"):
            return None
        result = self.runner.run(["curl", "-fsS", "--max-time", "5", GEOIP_URL], check=False, readonly=True)
        country = result.out.strip().upper() if result.ok else ""
        if len(country) == 2 and country.isalpha():
            return country
        return None

    def _candidates(self, user_mirror):
        if user_mirror:
            yield user_mirror.rstrip("/"), "user"
        live = self.live_mirror()
        if live:
            yield live, "live"
        country = self.geoip_country()
        regional = regional_mirror(country, self.arch)
        if regional:
            yield regional, "geoip"

    def select(self, user_mirror, codename):
        """Return the first candidate that validates, else the fallback"""
        for url, source in self._candidates(user_mirror):
            candidate = self.validate(MirrorCandidate(url, source), codename)
            if candidate.reachable:
                self.upgrade_https(candidate, codename)
                logger.info(f"Using {source} mirror {candidate.url}")
                return candidate
            if source == "user":
                logger.warning(f"Configured mirror {url} is not reachable, trying auto-detection")
            else:
                logger.debug(f"{source} mirror {url} is not reachable")

        candidate = self.validate(MirrorCandidate(fallback_mirror(self.arch), "fallback"), codename)
        if not candidate.reachable:
            logger.warning(f"Fallback mirror {candidate.url} did not answer either, using it anyway")
        self.upgrade_https(candidate, codename)
        logger.info(f"Using fallback mirror {candidate.url}")
        return candidate

    def security_mirror(self, codename):
        candidate = MirrorCandidate(default_security_mirror(self.arch), "security")
        return self.upgrade_https(candidate, codename).url
