"""
Human readable album titles built from location, time of day, date and tags.
"""

import random
import re
from typing import List, Optional

from smart_albums.clustering import Cluster, calculate_cluster_summary

TITLE_DATE_FORMAT = "%b %d, %Y"
FALLBACK_TITLE = "Beautiful moments"

PLACEHOLDER_PATTERN = re.compile(r"\{[^}]+\}")
WHITESPACE_PATTERN = re.compile(r"\s+")

SINGULAR_FORMS = [
    ("memories", "memory"),
    ("days", "day"),
    ("adventures", "adventure"),
    ("stories", "story"),
    ("moments", "moment"),
]

TAG_LOCATION_TEMPLATES = [
    "{tag} in {location}",
    "{tag} moments in {location}",
    "{location} {tag} collection",
    "{tag} adventures in {location}",
    "Captured {tag} in {location}",
    "{location} {tag} memories",
]

TAG_TEMPLATES = [
    "{tag} moments",
    "{tag} memories",
    "{tag} collection",
    "My {tag} album",
    "{tag} highlights",
    "Captured {tag} moments",
    "{tag} adventures",
    "Special {tag} memories",
    "{tag} times",
]

LOCATION_TIME_TEMPLATES = [
    "{time} adventures in {location}",
    "{time} moments in {location}",
    "{time} strolls through {location}",
    "{time} vibes in {location}",
    "{time} memories in {location}",
    "{time} stories from {location}",
    "{time} escapes to {location}",
    "Beautiful {time} in {location}",
    "Peaceful {time} in {location}",
    "Quiet {time} in {location}",
]

LOCATION_TEMPLATES = [
    "Moments in {location}",
    "Adventures in {location}",
    "Memories from {location}",
    "Exploring {location}",
    "{location} collection",
    "Scenes from {location}",
    "Captured in {location}",
    "{location} memories",
    "A day in {location}",
]

TIME_TEMPLATES = [
    "Beautiful {time} moments",
    "{time} memories",
    "{time} vibes",
    "Captured {time} moments",
    "{time} collection",
    "{time} adventures",
    "{time} scenes",
    "{time} memories to cherish",
]

DATE_TEMPLATES = [
    "{date} memories",
    "Photos from {date}",
    "{date} collection",
    "Moments from {date}",
    "{date} highlights",
    "Captured on {date}",
]

GENERAL_TEMPLATES = [
    FALLBACK_TITLE,
    "Captured memories",
    "Photo collection",
    "Special moments",
    "Memorable times",
    "Cherished memories",
    "Moments to remember",
    "Photo highlights",
    "Wonderful memories",
]


def _capitalize_first(text: str) -> str:
    return text[:1].upper() + text[1:]


def select_templates(has_tags: bool, has_location: bool, has_time: bool, has_date: bool) -> List[str]:
    """Pick the template family with the highest priority the inputs can fill."""
    if has_tags and has_location:
        return TAG_LOCATION_TEMPLATES
    if has_tags:
        return TAG_TEMPLATES
    if has_location and has_time:
        return LOCATION_TIME_TEMPLATES
    if has_location:
        return LOCATION_TEMPLATES
    if has_time:
        return TIME_TEMPLATES
    if has_date:
        return DATE_TEMPLATES
    return GENERAL_TEMPLATES


def singularize(title: str) -> str:
    for plural, singular in SINGULAR_FORMS:
        title = title.replace(plural, singular)
    return title


def generate_title(location: Optional[str] = None,
                   time_of_day: Optional[str] = None,
                   count: Optional[int] = None,
                   date: Optional[str] = None,
                   tags: Optional[List[str]] = None,
                   rng: Optional[random.Random] = None) -> str:
    """
    Generate a warm, human-like album title.

    Args:
        location: Place name such as a city or landmark
        time_of_day: "morning", "afternoon", "evening" or "night"
        count: Number of assets in the album
        date: Preformatted date string
        tags: Dominant tags, most relevant first
        rng: Random source used to choose among templates of one family

    Returns:
        str: A non-empty title
    """
    rng = rng or random.Random()
    tags = [tag for tag in (tags or []) if tag and tag.strip()]

    templates = select_templates(bool(tags), bool(location), bool(time_of_day), bool(date))
    title = rng.choice(templates)

    if location:
        title = title.replace("{location}", location)
    if time_of_day:
        title = title.replace("{time}", _capitalize_first(time_of_day))
    if count is not None:
        title = title.replace("{count}", str(count))
    if date:
        title = title.replace("{date}", date)

    if tags and "{tag}" in title:
        title = title.replace("{tag}", _capitalize_first(tags[0]))
        if len(tags) > 1:
            secondary = tags[1]
            if secondary.lower() not in title.lower():
                title = f"{title} & {secondary.title()}"

    title = PLACEHOLDER_PATTERN.sub("", title)
    title = WHITESPACE_PATTERN.sub(" ", title).strip()

    if count == 1:
        title = singularize(title)

    return title or FALLBACK_TITLE


def title_for_cluster(cluster: Cluster,
                      tags: Optional[List[str]] = None,
                      location: Optional[str] = None,
                      rng: Optional[random.Random] = None) -> str:
    """Title a cluster using its dominant time of day and start date."""
    summary = calculate_cluster_summary(cluster)
    date = summary.start_time.strftime(TITLE_DATE_FORMAT) if summary.start_time else None
    return generate_title(
        location=location,
        time_of_day=summary.time_of_day,
        count=summary.image_count,
        date=date,
        tags=tags,
        rng=rng,
    )
