"""
Retention of timestamped artifacts.

Artifacts are fed newest first. The first artifact seen in a calendar
day/week/month/quarter/year is the most recent one of that period and is kept
as long as the quota of the tier is not exhausted.
"""
from datetime import date, datetime
from typing import Optional, Set, Tuple

UNBOUNDED = 'unbounded'

TIERS = ('daily', 'weekly', 'monthly', 'quarterly', 'yearly')


def parse_quota(value) -> Optional[int]:
    """
    Parse a quota from the settings.
    :param value: non-negative int, "unbounded" or None
    :return: quota or None for unbounded
    """
    if value is None or (isinstance(value, str) and value.strip().lower() == UNBOUNDED):
        return None
    quota = int(value)
    if quota < 0:
        raise ValueError(f'Retention quota must be >= 0 or "{UNBOUNDED}", got {value}')
    return quota


class RetentionConfig:
    """
    Quotas of the retention tiers. None keeps every artifact of the tier.
    """

    def __init__(self,
                 daily: Optional[int] = 10,
                 weekly: Optional[int] = 0,
                 monthly: Optional[int] = 10,
                 quarterly: Optional[int] = 0,
                 yearly: Optional[int] = 10):
        """
        :param daily: number of daily artifacts (first of the day) to keep
        :param weekly: number of weekly artifacts (first of the ISO week) to keep
        :param monthly: number of monthly artifacts (first of the month) to keep
        :param quarterly: number of quarterly artifacts (first of the quarter) to keep
        :param yearly: number of yearly artifacts (first of the year) to keep
        """
        self.daily = parse_quota(daily)
        self.weekly = parse_quota(weekly)
        self.monthly = parse_quota(monthly)
        self.quarterly = parse_quota(quarterly)
        self.yearly = parse_quota(yearly)

    def __repr__(self):
        quotas = ', '.join(
            f'{tier}={UNBOUNDED if getattr(self, tier) is None else getattr(self, tier)}'
            for tier in TIERS
        )
        return f'RetentionConfig({quotas})'

    @classmethod
    def from_settings(cls, settings) -> 'RetentionConfig':
        """
        Build the config from the retention section of the settings.
        Missing tiers are unbounded.
        :param settings: Dynaconf settings
        """
        return cls(**{tier: settings(f'retention.{tier}', default=None) for tier in TIERS})


class Retention:
    """
    Streaming keep/discard decision for artifacts fed newest first.
    Use a new instance for every list of artifacts.
    """

    def __init__(self, config: RetentionConfig):
        self.config = config
        self.daily: Set[Tuple[int, int]] = set()
        self.weekly: Set[Tuple[int, int]] = set()
        self.monthly: Set[Tuple[int, int]] = set()
        self.quarterly: Set[Tuple[int, int]] = set()
        self.yearly: Set[int] = set()

    @staticmethod
    def _insert(seen: set, quota: Optional[int], key) -> bool:
        """
        :return: True if the quota is not exhausted and the key is new.
            Unbounded tiers keep everything.
        """
        if quota is None:
            # every artifact of the bucket is kept, not only the first one
            seen.add(key)
            return True
        if len(seen) >= quota:
            return False
        if key in seen:
            return False
        seen.add(key)
        return True

    def retain(self, timestamp: date or datetime) -> bool:
        """
        Decide whether an artifact is kept.
        Must be called in non-increasing order of the timestamps.
        :param timestamp: creation date of the artifact
        :return: True if the artifact is kept
        """
        quarter = (timestamp.month - 1) // 3 + 1
        # every tier has to see the artifact, no short-circuiting
        new_daily = self._insert(self.daily, self.config.daily,
                                 (timestamp.year, timestamp.timetuple().tm_yday))
        new_weekly = self._insert(self.weekly, self.config.weekly,
                                  (timestamp.year, timestamp.isocalendar()[1]))
        new_monthly = self._insert(self.monthly, self.config.monthly,
                                   (timestamp.year, timestamp.month))
        new_quarterly = self._insert(self.quarterly, self.config.quarterly,
                                     (timestamp.year, quarter))
        new_yearly = self._insert(self.yearly, self.config.yearly, timestamp.year)
        return new_daily or new_weekly or new_monthly or new_quarterly or new_yearly
