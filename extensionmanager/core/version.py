"""Version parsing and ordering

Versions follow the ``v<major>[.<minor>[.<patch>]][-rc<n>][-<qualifier>]``
grammar. A missing minor or patch number acts as a wildcard: comparison stops
and reports equality at the first component missing on either side, so ``v1``
compares equal to both ``v1.2.3`` and ``v1.9.9``. Release candidates sort
before the final release. Any other trailing qualifier is ignored.
"""

import re
from typing import Optional


VERSION_PATTERN = re.compile(r"^v(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:-rc(\d+))?")


class Version:
    """A parsed version

    Equality (``==``) and hashing are structural. Ordering operators use
    :meth:`compare`, which applies the wildcard rule, so two versions can be
    neither ``<`` nor ``>`` each other while still being different objects.
    """

    __slots__ = ("major", "minor", "patch", "release_candidate")

    def __init__(
        self,
        major: int,
        minor: Optional[int] = None,
        patch: Optional[int] = None,
        release_candidate: Optional[int] = None
    ):
        self.major = major
        self.minor = minor
        self.patch = patch
        self.release_candidate = release_candidate

    @classmethod
    def parse(cls, text: str) -> "Version":
        """
        Parse a version string

        Args:
            text: Version text (e.g. 'v1.2.3', 'v0.4-rc2', 'v2.0.0-SNAPSHOT')

        Returns:
            Parsed version

        Raises:
            ValueError: If no version can be found at the start of the text
        """
        if not isinstance(text, str):
            raise ValueError(f"Version must be a string, got {type(text).__name__}")

        match = VERSION_PATTERN.match(text.strip())
        if not match:
            raise ValueError(f"Version not found in {text!r}")

        major, minor, patch, rc = match.groups()
        return cls(
            int(major),
            int(minor) if minor is not None else None,
            int(patch) if patch is not None else None,
            int(rc) if rc is not None else None,
        )

    @staticmethod
    def is_valid(text: str, include_minor_and_patch: bool = False) -> bool:
        """
        Check whether a text is a valid version

        Args:
            text: Version text
            include_minor_and_patch: Whether minor and patch numbers are required

        Returns:
            True if the text is a valid version
        """
        try:
            version = Version.parse(text)
        except ValueError:
            return False
        if include_minor_and_patch and (version.minor is None or version.patch is None):
            return False
        return True

    def compare(self, other: "Version") -> int:
        """
        Compare with another version

        Returns:
            A negative number, zero or a positive number if this version is
            lower than, equivalent to or greater than the other
        """
        if self.major != other.major:
            return self.major - other.major

        if self.minor is None or other.minor is None:
            return 0
        if self.minor != other.minor:
            return self.minor - other.minor

        if self.patch is None or other.patch is None:
            return 0
        if self.patch != other.patch:
            return self.patch - other.patch

        if self.release_candidate is not None and other.release_candidate is not None:
            return self.release_candidate - other.release_candidate
        if self.release_candidate is not None:
            return -1
        if other.release_candidate is not None:
            return 1
        return 0

    def __lt__(self, other: "Version") -> bool:
        return self.compare(other) < 0

    def __le__(self, other: "Version") -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: "Version") -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: "Version") -> bool:
        return self.compare(other) >= 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return (
            self.major == other.major
            and self.minor == other.minor
            and self.patch == other.patch
            and self.release_candidate == other.release_candidate
        )

    def __hash__(self) -> int:
        return hash((self.major, self.minor, self.patch, self.release_candidate))

    def __str__(self) -> str:
        text = f"v{self.major}"
        if self.minor is not None:
            text += f".{self.minor}"
        if self.patch is not None:
            text += f".{self.patch}"
        if self.release_candidate is not None:
            text += f"-rc{self.release_candidate}"
        return text

    def __repr__(self) -> str:
        return f"Version('{self}')"
