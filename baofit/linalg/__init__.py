from .linop import LinOp, DenseLinOp, TriangularLinOp
from .covariance import CovarianceMatrix
from .operations import shape, diag, to_dense, solve, cholesky, logdet, trace, chi_square
