from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import yaml

from config.settings import load_settings
from config.settings import normalize_clan_tag


def _full_env(**overrides) -> dict[str, str]:
    env = {
        "DISCORD_TOKEN": "discord-token",
        "CLASH_API_TOKEN": "clash-token",
        "CLASH_CLAN_TAG": "abc123",
        "GUILD_ID": "1",
        "CHANNEL_WAR_LOGS_ID": "2",
        "ROLE_MEMBER_ID": "10",
        "ROLE_ELDER_ID": "11",
        "ROLE_COLEADER_ID": "12",
        "ROLE_LEADER_ID": "13",
        "ROLE_NON_MEMBER_ID": "14",
    }
    env.update(overrides)
    return env


class SettingsTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp_dir = Path(self._tmp.name)
        self.missing_path = str(self.tmp_dir / "absent.yml")

    def tearDown(self):
        self._tmp.cleanup()

    def _write_yaml(self, data: dict) -> str:
        path = self.tmp_dir / "clansync.yml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return str(path)

    def test_env_only(self):
        settings = load_settings(self.missing_path, env=_full_env())
        self.assertEqual(settings.clan_tag, "#ABC123")
        self.assertEqual(settings.guild_id, 1)
        self.assertEqual(settings.role_non_member_id, 14)
        self.assertEqual(settings.role_sync_interval_seconds, 60)
        self.assertEqual(settings.decks_per_day, 4)

    def test_yaml_values_overridden_by_env(self):
        path = self._write_yaml(
            {
                "clan_tag": "#FROMFILE",
                "war_logs_channel_id": 99,
                "roles": {"elder": 77},
                "intervals": {"role_sync_seconds": 120, "war_poll_seconds": 3},
            }
        )
        env = _full_env()
        del env["CHANNEL_WAR_LOGS_ID"]
        del env["ROLE_ELDER_ID"]
        env["CLASH_CLAN_TAG"] = "#FROMENV"

        settings = load_settings(path, env=env)
        self.assertEqual(settings.clan_tag, "#FROMENV")
        self.assertEqual(settings.war_logs_channel_id, 99)
        self.assertEqual(settings.role_elder_id, 77)
        self.assertEqual(settings.role_sync_interval_seconds, 120)
        self.assertEqual(settings.war_poll_interval_seconds, 10)

    def test_legacy_restricted_role_name(self):
        env = _full_env()
        del env["ROLE_NON_MEMBER_ID"]
        env["ROLE_VANQUISHED_ID"] = "55"
        self.assertEqual(load_settings(self.missing_path, env=env).role_non_member_id, 55)

        env["ROLE_NON_MEMBER_ID"] = "56"
        self.assertEqual(load_settings(self.missing_path, env=env).role_non_member_id, 56)

    def test_announcements_channel_is_optional(self):
        self.assertEqual(load_settings(self.missing_path, env=_full_env()).announcements_channel_id, 0)

        path = self._write_yaml({"announcements_channel_id": 55})
        self.assertEqual(load_settings(path, env=_full_env()).announcements_channel_id, 55)
        env = _full_env(CHANNEL_ANNOUNCEMENTS_ID="66")
        self.assertEqual(load_settings(path, env=env).announcements_channel_id, 66)

    def test_missing_required_values(self):
        env = _full_env()
        del env["DISCORD_TOKEN"]
        del env["GUILD_ID"]
        with self.assertRaises(RuntimeError) as ctx:
            load_settings(self.missing_path, env=env)
        self.assertIn("discord_token", str(ctx.exception))
        self.assertIn("guild_id", str(ctx.exception))

    def test_bad_integer(self):
        with self.assertRaises(RuntimeError):
            load_settings(self.missing_path, env=_full_env(GUILD_ID="not-a-number"))
        with self.assertRaises(RuntimeError):
            load_settings(self.missing_path, env=_full_env(DECKS_PER_DAY="0"))

    def test_settings_path_from_env(self):
        path = self._write_yaml({"sqlite_path": "custom.sqlite"})
        settings = load_settings(env=_full_env(CLANSYNC_SETTINGS_PATH=path))
        self.assertEqual(settings.sqlite_path, "custom.sqlite")

    def test_normalize_clan_tag(self):
        self.assertEqual(normalize_clan_tag(" #abc "), "#ABC")
        self.assertEqual(normalize_clan_tag("abc"), "#ABC")
        self.assertEqual(normalize_clan_tag(None), "")


if __name__ == "__main__":
    unittest.main()
