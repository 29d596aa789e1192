"""Mock GMSH module for testing without GMSH dependency."""

class MockGmshModel:
    def add(self, name):
        pass

    class geo:
        @staticmethod
        def synchronize():
            pass

    class mesh:
        @staticmethod
        def getElements(dim):
            if dim == 2:
                return ([3], [[1, 2, 3]], [[]])  # three quadrilaterals
            return ([], [], [])

        @staticmethod
        def getElementQualities(elements, quality_type):
            return [0.8, 0.9, 0.7]  # Mock quality data

class MockGmsh:
    model = MockGmshModel()

    def __init__(self):
        self.calls = []

    def initialize(self):
        self.calls.append('initialize')

    def finalize(self):
        self.calls.append('finalize')

    def write(self, filename):
        self.calls.append(('write', filename))

    class option:
        @staticmethod
        def setNumber(name, value):
            pass

class FailingFinalizeGmsh(MockGmsh):
    def finalize(self):
        raise RuntimeError("finalize failed")
