"""Core primitives shared by every docbuild component: errors, enums, logging, settings, ORM."""
