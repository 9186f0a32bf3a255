"""Tests for macstats.history."""
import unittest

from macstats.history import HistoryBuffer, MetricHistories, summarize


class TestHistoryBuffer(unittest.TestCase):

    def test_evicts_oldest_in_order(self):
        buffer = HistoryBuffer(capacity=30)
        for i in range(31):
            buffer.append(i)
        values = buffer.values()
        self.assertEqual(len(values), 30)
        self.assertEqual(values[0], 1.0)
        self.assertEqual(values[-1], 30.0)
        self.assertEqual(list(values), sorted(values))

    def test_length_grows_to_capacity(self):
        buffer = HistoryBuffer(capacity=3)
        self.assertEqual(len(buffer), 0)
        buffer.append(1)
        buffer.append(2)
        self.assertEqual(len(buffer), 2)
        buffer.append(3)
        buffer.append(4)
        self.assertEqual(len(buffer), 3)
        self.assertEqual(buffer.capacity, 3)

    def test_summary(self):
        buffer = HistoryBuffer(capacity=5, values=[2, 4, 6])
        summary = buffer.summary()
        self.assertEqual(summary.count, 3)
        self.assertEqual(summary.minimum, 2.0)
        self.assertEqual(summary.maximum, 6.0)
        self.assertAlmostEqual(summary.average, 4.0)

    def test_summary_of_empty_buffer(self):
        summary = HistoryBuffer().summary()
        self.assertEqual(summary.count, 0)
        self.assertIsNone(summary.average)

    def test_rejects_zero_capacity(self):
        with self.assertRaises(ValueError):
            HistoryBuffer(capacity=0)

    def test_values_is_a_copy(self):
        buffer = HistoryBuffer(capacity=3, values=[1])
        values = buffer.values()
        buffer.append(2)
        self.assertEqual(values, (1.0,))


class TestMetricHistories(unittest.TestCase):

    def test_append_and_freeze(self):
        histories = MetricHistories(capacity=2)
        histories.append(10, 40, 100, 200)
        histories.append(20, 41, 110, 210)
        histories.append(30, 42, 120, 220)
        frozen = histories.freeze()
        self.assertEqual(frozen.cpu, (20.0, 30.0))
        self.assertEqual(frozen.cpu_temp, (41.0, 42.0))
        self.assertEqual(frozen.upload, (110.0, 120.0))
        self.assertEqual(frozen.download, (210.0, 220.0))

    def test_summaries_cover_every_series(self):
        histories = MetricHistories()
        histories.append(50, 45, 1, 2)
        self.assertEqual(set(histories.summaries()), {"cpu", "cpu_temp", "upload", "download"})

    def test_summarize_iterable(self):
        self.assertEqual(summarize(iter([1.0, 3.0])).average, 2.0)


if __name__ == "__main__":
    unittest.main()
