"""Resource keys for job exclusivity.

A chapter key is held by its processing or delete job; a manga key is held
by its delete job. Work on a manga checks the manga key before starting.
"""


def chapter_resource_key(chapter_id: int) -> str:
    return f"chapter:{chapter_id}"


def manga_resource_key(manga_id: int) -> str:
    return f"manga:{manga_id}"
