from __future__ import annotations

from drf_spectacular.openapi import AutoSchema


class FeatureAutoSchema(AutoSchema):
    PATH_TAGS: list[tuple[str, str]] = [
        ('/api/v1/esign/', 'E-Sign Callbacks'),
        ('/api/v1/signatures/', 'Signatures'),
        ('/api/v1/exports/', 'Exports'),
        ('/api/v1/contracts/', 'Contracts'),
        ('/api/v1/health/', 'Health'),
    ]

    def get_tags(self) -> list[str]:  # type: ignore[override]
        path = (self.path or '').strip()
        for prefix, tag in self.PATH_TAGS:
            if path.startswith(prefix):
                return [tag]
        return super().get_tags()
