import tempfile
import unittest
from pathlib import Path

from hdi.accounts.directory import InMemoryAccountDirectory, PasswdAccountDirectory, parse_id_file


class TestInMemoryAccountDirectory(unittest.TestCase):
    def test_id_lookups(self) -> None:
        accounts = InMemoryAccountDirectory(
            users={"root": 0, "alice": 500, "toor": 0},
            groups={"root": 0, "wheel": 10, "staff": 10},
        )
        self.assertTrue(accounts.has_uid(0))
        self.assertTrue(accounts.has_uid(500))
        self.assertFalse(accounts.has_uid(501))
        self.assertTrue(accounts.has_gid(10))
        self.assertFalse(accounts.has_gid(11))
        self.assertEqual(accounts.uid_for_user("alice"), 500)
        self.assertIsNone(accounts.uid_for_user("bob"))
        self.assertEqual(accounts.gid_for_group("staff"), 10)
        self.assertEqual(accounts.group_name(10), "wheel")
        self.assertIsNone(accounts.group_name(11))

    def test_inputs_are_copied(self) -> None:
        users = {"alice": 500}
        accounts = InMemoryAccountDirectory(users=users, groups={})
        users["bob"] = 501
        self.assertFalse(accounts.has_uid(501))
        self.assertIsNone(accounts.uid_for_user("bob"))

    def test_many_accounts(self) -> None:
        users = {f"user{i}": 10000 + i for i in range(50000)}
        accounts = InMemoryAccountDirectory(users=users, groups={})
        for uid in range(10000, 60000, 997):
            self.assertTrue(accounts.has_uid(uid))
        self.assertFalse(accounts.has_uid(60000))


class TestPasswdAccountDirectory(unittest.TestCase):
    def test_reads_passwd_and_group(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "etc").mkdir()
            (root / "etc" / "passwd").write_text(
                "# local accounts\n"
                "root:x:0:0:root:/root:/bin/bash\n"
                "\n"
                "alice:x:500:500::/home/alice:/bin/bash\n"
                "alice:x:600:600::/home/alice2:/bin/bash\n",
                encoding="utf-8",
            )
            (root / "etc" / "group").write_text("root:x:0:\nmail:x:12:alice\n", encoding="utf-8")
            accounts = PasswdAccountDirectory(root=root)
        self.assertEqual(accounts.uid_for_user("alice"), 500)
        self.assertFalse(accounts.has_uid(600))
        self.assertEqual(accounts.gid_for_group("mail"), 12)
        self.assertEqual(accounts.group_name(0), "root")

    def test_malformed_line_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_id_file(["root:x\n"])
        with self.assertRaises(ValueError):
            parse_id_file(["root:x:zero:0::/:/bin/sh\n"])


if __name__ == "__main__":
    unittest.main()
