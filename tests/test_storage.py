import os
import tempfile
import unittest

from transfer.models import ReceivedFile
from transfer.storage import DirectorySink, safe_file_name, unique_path


class SafeFileNameTest(unittest.TestCase):

    def test_directory_parts_are_stripped(self):
        self.assertEqual(safe_file_name("../../etc/passwd"), "passwd")
        self.assertEqual(safe_file_name("C:\\Users\\me\\report.pdf"), "report.pdf")
        self.assertEqual(safe_file_name("photo.jpg"), "photo.jpg")

    def test_empty_names_get_a_default(self):
        for name in ("", "   ", ".", "..", "dir/"):
            self.assertEqual(safe_file_name(name), "download", repr(name))


class DirectorySinkTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def test_save_dir_is_created(self):
        target = os.path.join(self.root, "nested", "downloads")
        sink = DirectorySink(target)
        self.assertTrue(os.path.isdir(target))
        self.assertEqual(sink.save_dir, target)

    def test_unique_path_counts_up(self):
        for name in ("a.txt", "a (1).txt"):
            open(os.path.join(self.root, name), "w").close()
        self.assertEqual(unique_path(self.root, "a.txt"), os.path.join(self.root, "a (2).txt"))
        self.assertEqual(unique_path(self.root, "b.txt"), os.path.join(self.root, "b.txt"))

    async def test_same_name_is_never_overwritten(self):
        sink = DirectorySink(self.root)
        first = await sink.save(ReceivedFile(name="notes.txt", mime_type="text/plain", data=b"one"))
        second = await sink.save(ReceivedFile(name="../notes.txt", mime_type="text/plain", data=b"two"))

        self.assertEqual(os.path.basename(first), "notes.txt")
        self.assertEqual(os.path.basename(second), "notes (1).txt")
        with open(first, "rb") as f:
            self.assertEqual(f.read(), b"one")
        with open(second, "rb") as f:
            self.assertEqual(f.read(), b"two")

    async def test_empty_file(self):
        sink = DirectorySink(self.root)
        path = await sink.save(ReceivedFile(name="empty.bin", mime_type="application/octet-stream", data=b""))
        self.assertEqual(os.path.getsize(path), 0)


if __name__ == "__main__":
    unittest.main()
